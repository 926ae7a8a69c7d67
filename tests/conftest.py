"""
Shared fixtures: a controllable clock, fake provider adapters, and the
linking services wired on an in-memory store.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from config.settings import Settings
from connectors.base import FileListingAdapter, TokenExchangeAdapter
from connectors.files import AggregatedFileListingService
from connectors.models import FileMetadata, FilePage, ProviderType, RawFileItem, TokenGrant
from connectors.registry import ProviderRegistry
from connectors.status import ConnectionStatusService
from connectors.store import InMemoryLinkStore
from connectors.token_manager import TokenLifecycleManager

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeExchange(TokenExchangeAdapter):
    def __init__(self) -> None:
        self.calls: list[tuple[ProviderType, str]] = []
        self.grant = TokenGrant(
            access_token_ref="access-2",
            refresh_token_ref="refresh-2",
            ttl=timedelta(hours=1),
        )
        self.error: Exception | None = None
        self.delay = 0.0

    async def refresh(self, provider: ProviderType, refresh_token_ref: str) -> TokenGrant:
        self.calls.append((provider, refresh_token_ref))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.grant


class FakeListing(FileListingAdapter):
    def __init__(self) -> None:
        self.files: Dict[ProviderType, List[RawFileItem]] = {}
        self.errors: Dict[ProviderType, Exception] = {}
        self.delays: Dict[ProviderType, float] = {}
        self.calls: list[tuple[ProviderType, str, str]] = []
        self.page_sizes: list[Optional[int]] = []
        self.page_requests: list[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def list(
        self,
        provider: ProviderType,
        access_token_ref: str,
        user_id: str,
        *,
        page_size: Optional[int] = None,
    ) -> List[RawFileItem]:
        self.calls.append((provider, access_token_ref, user_id))
        self.page_sizes.append(page_size)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delays.get(provider):
                await asyncio.sleep(self.delays[provider])
            if provider in self.errors:
                raise self.errors[provider]
            return list(self.files.get(provider, []))
        finally:
            self.in_flight -= 1

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
        self.page_requests.append(
            {"provider": provider, "folder_id": folder_id, "page_size": page_size, "page_token": page_token}
        )
        if provider in self.errors:
            raise self.errors[provider]
        files = self.files.get(provider, [])
        start = int(page_token or 0)
        end = start + (page_size or len(files) or 1)
        return FilePage(
            items=files[start:end],
            next_page_token=str(end) if end < len(files) else None,
        )

    async def metadata(
        self, provider: ProviderType, access_token_ref: str, user_id: str, file_id: str
    ) -> FileMetadata:
        if provider in self.errors:
            raise self.errors[provider]
        for item in self.files.get(provider, []):
            if item.id == file_id:
                return FileMetadata(
                    **item.model_dump(),
                    provider=provider,
                    web_url=f"https://{provider.value}.example/{file_id}",
                    provider_details={"token": access_token_ref},
                )
        raise KeyError(file_id)

    async def view_url(
        self, provider: ProviderType, access_token_ref: str, user_id: str, file_id: str
    ) -> str:
        meta = await self.metadata(provider, access_token_ref, user_id, file_id)
        return meta.web_url


def raw_file(file_id: str, *, minutes: int = 0, size: int | None = 10) -> RawFileItem:
    return RawFileItem(
        id=file_id,
        name=f"{file_id}.txt",
        mime_type="text/plain",
        size_bytes=size,
        modified_utc=T0 + timedelta(minutes=minutes),
    )


@pytest.fixture
def make_file():
    return raw_file


@pytest.fixture
def settings() -> Settings:
    return Settings(
        google_client_id="google-client",
        google_client_secret="google-secret",
        microsoft_client_id="ms-client",
        microsoft_client_secret="ms-secret",
        refresh_skew_seconds=300,
        token_encryption_key="",
        database_url="memory://",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(settings: Settings) -> ProviderRegistry:
    return ProviderRegistry.from_settings(settings)


@pytest.fixture
def store() -> InMemoryLinkStore:
    return InMemoryLinkStore()


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def listing() -> FakeListing:
    return FakeListing()


@pytest.fixture
def manager(registry, store, exchange, clock) -> TokenLifecycleManager:
    return TokenLifecycleManager(registry, store, exchange, clock=clock, refresh_timeout=1.0)


@pytest.fixture
def status_service(manager) -> ConnectionStatusService:
    return ConnectionStatusService(manager)


@pytest.fixture
def file_service(status_service, manager, listing) -> AggregatedFileListingService:
    return AggregatedFileListingService(
        status_service, manager, listing, max_concurrency=2, timeout=1.0
    )
