"""
ProviderRegistry — the closed catalog of providers the system knows about.
ConnectorRegistry — lookup table from ProviderType to its connector.

Both are built once at startup and handed to the services that need them.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Union

from config.settings import Settings
from connectors.base import BaseConnector, FileListingAdapter, TokenExchangeAdapter
from connectors.errors import ProviderNotRegistered
from connectors.google import GOOGLE_SCOPES
from connectors.microsoft import MICROSOFT_SCOPES
from connectors.models import FileMetadata, FilePage, ProviderDescriptor, ProviderType, TokenGrant

logger = logging.getLogger(__name__)

ProviderKey = Union[ProviderType, str]


def _coerce(provider: ProviderKey) -> ProviderType:
    if isinstance(provider, ProviderType):
        return provider
    try:
        return ProviderType(str(provider).lower())
    except ValueError:
        raise ProviderNotRegistered(provider) from None


class ProviderRegistry:
    """Immutable map of ProviderType → ProviderDescriptor."""

    def __init__(self, descriptors: Iterable[ProviderDescriptor]) -> None:
        table: Dict[ProviderType, ProviderDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.provider in table:
                raise ValueError(f"Duplicate descriptor for {descriptor.provider.value}")
            table[descriptor.provider] = descriptor
        self._descriptors: Mapping[ProviderType, ProviderDescriptor] = MappingProxyType(table)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        skew = timedelta(seconds=settings.refresh_skew_seconds)
        descriptors = []
        if settings.google_enabled:
            descriptors.append(
                ProviderDescriptor(
                    provider=ProviderType.GOOGLE,
                    display_name="Google Drive",
                    supported_scopes=frozenset(GOOGLE_SCOPES),
                    default_ttl=timedelta(seconds=settings.google_token_ttl_seconds),
                    refresh_skew=skew,
                )
            )
        if settings.microsoft_enabled:
            descriptors.append(
                ProviderDescriptor(
                    provider=ProviderType.MICROSOFT,
                    display_name="OneDrive",
                    supported_scopes=frozenset(MICROSOFT_SCOPES),
                    default_ttl=timedelta(seconds=settings.microsoft_token_ttl_seconds),
                    refresh_skew=skew,
                )
            )
        registry = cls(descriptors)
        logger.info(
            "Provider registry: %s",
            ", ".join(p.value for p in registry.providers()) or "(empty)",
        )
        return registry

    def descriptor_for(self, provider: ProviderKey) -> ProviderDescriptor:
        """Return the descriptor or raise ``ProviderNotRegistered``."""
        descriptor = self._descriptors.get(_coerce(provider))
        if descriptor is None:
            raise ProviderNotRegistered(provider)
        return descriptor

    def providers(self) -> List[ProviderType]:
        """Registered providers sorted by identifier."""
        return sorted(self._descriptors, key=lambda p: p.value)

    def __contains__(self, provider: object) -> bool:
        try:
            return _coerce(provider) in self._descriptors  # type: ignore[arg-type]
        except ProviderNotRegistered:
            return False

    def __len__(self) -> int:
        return len(self._descriptors)


class ConnectorRegistry(TokenExchangeAdapter, FileListingAdapter):
    """Dispatches adapter calls to the connector registered for a provider."""

    def __init__(self, connectors: Iterable[BaseConnector]) -> None:
        table: Dict[ProviderType, BaseConnector] = {}
        for conn in connectors:
            table[conn.provider] = conn
            if conn.is_configured():
                logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider.value)
            else:
                logger.warning(
                    "Connector %s has no client_id/secret — OAuth linking will fail",
                    conn.provider.value,
                )
        self._connectors: Mapping[ProviderType, BaseConnector] = MappingProxyType(table)

    def get(self, provider: ProviderKey) -> BaseConnector:
        conn = self._connectors.get(_coerce(provider))
        if conn is None:
            raise ProviderNotRegistered(provider)
        return conn

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all available connectors."""
        return [
            {
                "provider": c.provider.value,
                "display_name": c.display_name,
                "configured": c.is_configured(),
            }
            for c in sorted(self._connectors.values(), key=lambda c: c.provider.value)
        ]

    async def refresh(self, provider: ProviderType, refresh_token_ref: str) -> TokenGrant:
        return await self.get(provider).refresh_access_token(refresh_token_ref)

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
        return await self.get(provider).list_files(
            access_token_ref,
            user_id,
            folder_id=folder_id,
            page_size=page_size,
            page_token=page_token,
        )

    async def metadata(
        self, provider: ProviderType, access_token_ref: str, user_id: str, file_id: str
    ) -> FileMetadata:
        return await self.get(provider).get_file_metadata(access_token_ref, file_id, user_id)

    async def view_url(
        self, provider: ProviderType, access_token_ref: str, user_id: str, file_id: str
    ) -> str:
        return await self.get(provider).get_view_url(access_token_ref, file_id, user_id)

    async def revoke(self, provider: ProviderType, token: str) -> bool:
        return await self.get(provider).revoke_token(token)
