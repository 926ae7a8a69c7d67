"""
ConnectionStatusService — token-free answers to "is U linked to P?".
"""

from __future__ import annotations

from typing import List

from connectors.models import ConnectionStatusResponse, ProviderType
from connectors.registry import ProviderKey
from connectors.token_manager import TokenLifecycleManager


class ConnectionStatusService:
    def __init__(self, tokens: TokenLifecycleManager) -> None:
        self._tokens = tokens

    async def status_for(self, user_id: str, provider: ProviderKey) -> ConnectionStatusResponse:
        """Never raises for "not linked"; unknown providers still raise."""
        descriptor = self._tokens.registry.descriptor_for(provider)
        record = await self._tokens.get_link(user_id, descriptor.provider)
        return ConnectionStatusResponse.from_record(record, descriptor.provider)

    async def status_for_all_providers(self, user_id: str) -> List[ConnectionStatusResponse]:
        """One entry per registered provider, sorted by provider identifier."""
        by_provider = {r.provider: r for r in await self._tokens.list_links(user_id)}
        return [
            ConnectionStatusResponse.from_record(by_provider.get(p), p)
            for p in self._tokens.registry.providers()
        ]

    async def linked_providers(self, user_id: str) -> List[ProviderType]:
        return [s.provider for s in await self.status_for_all_providers(user_id) if s.is_linked]
