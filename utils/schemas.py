"""
Pydantic request / response schemas for the HTTP surface.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from connectors.models import ProviderFileItem, ProviderType


# ═══════════════════════════════════════════════════════════════════════════════
# Linking
# ═══════════════════════════════════════════════════════════════════════════════


class LinkRequest(BaseModel):
    """Grant material produced by a completed authorization flow."""

    scopes: List[str] = Field(default_factory=list)
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(
        None, description="Access token lifetime in seconds; provider default when omitted"
    )


class ProviderInfo(BaseModel):
    provider: ProviderType
    display_name: str
    configured: bool


class AuthUrlResponse(BaseModel):
    provider: ProviderType
    auth_url: str


# ═══════════════════════════════════════════════════════════════════════════════
# Files
# ═══════════════════════════════════════════════════════════════════════════════


class FileListResponse(BaseModel):
    items: List[ProviderFileItem] = Field(default_factory=list)
    errors: Dict[ProviderType, str] = Field(
        default_factory=dict, description="Providers that failed, with the reason"
    )


class FileViewUrlResponse(BaseModel):
    url: str
