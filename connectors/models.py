"""
Domain types for provider links.

``LinkRecord`` is the one durable fact per (user, provider): it is written
only through ``TokenLifecycleManager`` and read everywhere else through the
token-free ``ConnectionStatusResponse`` projection.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

REVOKED_TOKEN_SENTINEL = "__revoked__"


class ProviderType(str, Enum):
    """Closed set of storage providers a user can link."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"


class LinkStatus(str, Enum):
    LINKED = "linked"
    REVOKED = "revoked"


class ProviderDescriptor(BaseModel):
    """Static capabilities of one provider, fixed at startup."""

    model_config = ConfigDict(frozen=True)

    provider: ProviderType
    display_name: str
    supported_scopes: FrozenSet[str] = frozenset()
    default_ttl: timedelta = timedelta(hours=1)
    refresh_skew: timedelta = timedelta(minutes=5)


class TokenGrant(BaseModel):
    """Result of a refresh exchange with a provider."""

    model_config = ConfigDict(frozen=True)

    access_token_ref: str
    refresh_token_ref: Optional[str] = None   # None → provider did not rotate it
    ttl: timedelta


class LinkRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    provider: ProviderType
    status: LinkStatus = LinkStatus.LINKED
    granted_scopes: FrozenSet[str] = frozenset()
    access_token_ref: str = Field(repr=False)
    refresh_token_ref: Optional[str] = Field(default=None, repr=False)
    expires_at_utc: Optional[datetime] = None
    revoked_at_utc: Optional[datetime] = None
    linked_at_utc: Optional[datetime] = None
    last_refreshed_utc: Optional[datetime] = None
    version: int = 0

    @model_validator(mode="after")
    def _check_lifecycle(self) -> "LinkRecord":
        if self.status is LinkStatus.LINKED:
            if self.revoked_at_utc is not None:
                raise ValueError("a linked record cannot carry revoked_at_utc")
            if self.expires_at_utc is None:
                raise ValueError("a linked record requires expires_at_utc")
        elif self.revoked_at_utc is None:
            raise ValueError("a revoked record requires revoked_at_utc")
        return self

    @property
    def is_linked(self) -> bool:
        return self.status is LinkStatus.LINKED

    @property
    def is_revoked(self) -> bool:
        return self.status is LinkStatus.REVOKED

    @property
    def key(self) -> tuple[str, ProviderType]:
        return (self.user_id, self.provider)

    def remaining(self, now: datetime) -> timedelta:
        """Time left before the access grant expires (negative once expired)."""
        if self.expires_at_utc is None:
            return timedelta(0)
        return self.expires_at_utc - now


class RawFileItem(BaseModel):
    """File metadata as returned by a single provider listing."""

    id: str
    name: str
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    modified_utc: Optional[datetime] = None

    @field_validator("modified_utc")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive timestamps are taken as UTC so items from any provider sort together
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class FilePage(BaseModel):
    """One page of a provider listing; ``next_page_token`` is opaque to callers."""

    items: List[RawFileItem] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class ProviderFileItem(RawFileItem):
    """File metadata tagged with the provider it came from."""

    provider: ProviderType

    @classmethod
    def from_raw(cls, raw: RawFileItem, provider: ProviderType) -> "ProviderFileItem":
        return cls(**raw.model_dump(), provider=provider)


class ProviderFilePage(BaseModel):
    items: List[ProviderFileItem] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class FileMetadata(ProviderFileItem):
    """Detailed metadata for a single file, including the provider's raw payload."""

    web_url: Optional[str] = None
    provider_details: Dict[str, Any] = Field(default_factory=dict)


class ConnectionStatusResponse(BaseModel):
    provider: ProviderType
    is_linked: bool
    scopes: List[str] = Field(default_factory=list)
    expires_at_utc: Optional[datetime] = None

    @classmethod
    def not_linked(cls, provider: ProviderType) -> "ConnectionStatusResponse":
        return cls(provider=provider, is_linked=False, scopes=[])

    @classmethod
    def from_record(cls, record: Optional[LinkRecord], provider: ProviderType) -> "ConnectionStatusResponse":
        if record is None or not record.is_linked:
            return cls.not_linked(provider)
        return cls(
            provider=provider,
            is_linked=True,
            scopes=sorted(record.granted_scopes),
            expires_at_utc=record.expires_at_utc,
        )


class FileListingResult(BaseModel):
    items: List[ProviderFileItem] = Field(default_factory=list)
    errors: dict[ProviderType, str] = Field(default_factory=dict)
