"""
AggregatedFileListingService — one file view across every linked provider.

Each linked provider is fetched independently and concurrently (bounded by
a semaphore).  A provider that fails contributes an ``errors`` entry and no
items; the rest of the listing still succeeds.  If the caller cancels
``list_files`` the in-flight provider calls are cancelled with it and no
partial result is returned.

The single-provider calls (paged listing, metadata, view URL) raise typed
errors instead.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, List, Optional, Tuple, TypeVar

from connectors.base import FileListingAdapter
from connectors.errors import ConnectorError, ProviderListingFailed
from connectors.models import (
    FileListingResult,
    FileMetadata,
    ProviderFilePage,
    ProviderFileItem,
    ProviderType,
)
from connectors.registry import ProviderKey
from connectors.status import ConnectionStatusService
from connectors.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)

T = TypeVar("T")

# (provider, items, error reason)
_Outcome = Tuple[ProviderType, List[ProviderFileItem], Optional[str]]


class AggregatedFileListingService:
    def __init__(
        self,
        status: ConnectionStatusService,
        tokens: TokenLifecycleManager,
        listing: FileListingAdapter,
        *,
        max_concurrency: int = 4,
        timeout: Optional[float] = 20.0,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._status = status
        self._tokens = tokens
        self._listing = listing
        self._max_concurrency = max_concurrency
        self._timeout = timeout

    async def list_files(
        self,
        user_id: str,
        *,
        sort_by_modified: bool = False,
        page_size: Optional[int] = None,
    ) -> FileListingResult:
        """First page of every linked provider; ``page_size`` applies per provider."""
        providers = await self._status.linked_providers(user_id)
        if not providers:
            logger.info("User %s has no linked providers", user_id)
            return FileListingResult()

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def bounded(provider: ProviderType) -> _Outcome:
            async with semaphore:
                return await self._fetch(user_id, provider, page_size)

        outcomes = await asyncio.gather(*(bounded(p) for p in providers))

        result = FileListingResult()
        for provider, items, error in outcomes:
            if error is not None:
                result.errors[provider] = error
            else:
                result.items.extend(items)

        if sort_by_modified:
            result.items.sort(key=lambda f: f.modified_utc or _OLDEST, reverse=True)

        logger.info(
            "Aggregated %d files from %d/%d providers for user %s",
            len(result.items), len(providers) - len(result.errors), len(providers), user_id,
        )
        return result

    async def list_provider_files(
        self,
        user_id: str,
        provider: ProviderKey,
        *,
        folder_id: Optional[str] = None,
        page_size: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> ProviderFilePage:
        """
        One page from a single provider; failures raise instead of being
        collected.  Pass the returned ``next_page_token`` back to continue.
        """
        provider, token = await self._token(user_id, provider)
        page = await self._call(
            user_id,
            provider,
            "listing",
            self._listing.list_page(
                provider,
                token,
                user_id,
                folder_id=folder_id,
                page_size=page_size,
                page_token=page_token,
            ),
        )
        return ProviderFilePage(
            items=[ProviderFileItem.from_raw(item, provider) for item in page.items],
            next_page_token=page.next_page_token,
        )

    async def get_file_metadata(self, user_id: str, provider: ProviderKey, file_id: str) -> FileMetadata:
        provider, token = await self._token(user_id, provider)
        return await self._call(
            user_id, provider, "metadata", self._listing.metadata(provider, token, user_id, file_id)
        )

    async def get_file_view_url(self, user_id: str, provider: ProviderKey, file_id: str) -> str:
        provider, token = await self._token(user_id, provider)
        return await self._call(
            user_id, provider, "view url", self._listing.view_url(provider, token, user_id, file_id)
        )

    async def _token(self, user_id: str, provider: ProviderKey) -> Tuple[ProviderType, str]:
        provider = self._tokens.registry.descriptor_for(provider).provider
        return provider, await self._tokens.access_token_for(user_id, provider)

    async def _call(self, user_id: str, provider: ProviderType, action: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderListingFailed(
                f"{provider.value} {action} timed out after {self._timeout}s",
                provider=provider.value,
                user_id=user_id,
            ) from exc
        except ConnectorError:
            raise
        except Exception as exc:
            raise ProviderListingFailed(
                f"{provider.value} {action} failed: {exc}",
                provider=provider.value,
                user_id=user_id,
            ) from exc

    async def _fetch(self, user_id: str, provider: ProviderType, page_size: Optional[int]) -> _Outcome:
        try:
            token = await self._tokens.access_token_for(user_id, provider)
            raw = await self._call(
                user_id,
                provider,
                "listing",
                self._listing.list(provider, token, user_id, page_size=page_size),
            )
        except ConnectorError as exc:
            logger.warning("Listing %s for user %s failed: %s", provider.value, user_id, exc)
            return provider, [], exc.reason
        except Exception as exc:
            logger.exception("Unexpected error listing %s for user %s", provider.value, user_id)
            return provider, [], f"{type(exc).__name__}: {exc}"
        return provider, [ProviderFileItem.from_raw(item, provider) for item in raw], None
