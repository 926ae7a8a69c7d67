"""
BaseConnector — abstract interface for every storage provider.

Each ``ProviderType`` has exactly one subclass; ``ConnectorRegistry`` keeps
them in a lookup table and exposes them to the core through the two narrow
adapter interfaces below.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from connectors.models import FileMetadata, FilePage, ProviderType, RawFileItem, TokenGrant


class TokenExchangeAdapter(ABC):
    """Exchanges a refresh token for a new access grant."""

    @abstractmethod
    async def refresh(self, provider: ProviderType, refresh_token_ref: str) -> TokenGrant:
        ...


class FileListingAdapter(ABC):
    """Reads file metadata from one provider with an access token."""

    async def list(
        self,
        provider: ProviderType,
        access_token_ref: str,
        user_id: str,
        *,
        page_size: Optional[int] = None,
    ) -> List[RawFileItem]:
        """First page of the drive root."""
        page = await self.list_page(provider, access_token_ref, user_id, page_size=page_size)
        return page.items

    @abstractmethod
    async def list_page(
        self,
        provider: ProviderType,
        access_token_ref: str,
        user_id: str,
        *,
        folder_id: Optional[str] = None,
        page_size: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> FilePage:
        ...

    @abstractmethod
    async def metadata(
        self, provider: ProviderType, access_token_ref: str, user_id: str, file_id: str
    ) -> FileMetadata:
        ...

    @abstractmethod
    async def view_url(
        self, provider: ProviderType, access_token_ref: str, user_id: str, file_id: str
    ) -> str:
        ...


class BaseConnector(ABC):
    """Abstract base for all storage connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider(self) -> ProviderType:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Google Drive', 'OneDrive'."""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes requested when linking."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Opaque state string (encodes user_id + CSRF token).
        """
        ...

    @abstractmethod
    async def handle_callback(self, code: str) -> Dict[str, Any]:
        """
        Exchange the authorization code for tokens.

        Returns
        -------
        dict with keys: access_token, refresh_token, expires_in, scopes
        """
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        ...

    async def revoke_token(self, token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if the provider doesn't support revocation.
        """
        return False

    # ── Files ───────────────────────────────────────────────────────────

    @abstractmethod
    async def list_files(
        self,
        access_token: str,
        user_id: str,
        *,
        folder_id: Optional[str] = None,
        page_size: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> FilePage:
        """
        One page of files from ``folder_id`` (the drive root when None).

        ``page_token`` is the ``next_page_token`` of the previous page;
        ``page_size`` falls back to ``listing_page_size``.
        """
        ...

    @abstractmethod
    async def get_file_metadata(self, access_token: str, file_id: str, user_id: str) -> FileMetadata:
        ...

    @abstractmethod
    async def get_view_url(self, access_token: str, file_id: str, user_id: str) -> str:
        """Browser URL that opens the file in the provider's web UI."""
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """True if client credentials for the OAuth flow are present."""
        return True
