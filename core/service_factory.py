"""
Centralised service builder.

The app lifespan and the tests both call ``build_services`` so the wiring
of registry → store → token manager → status → file listing lives in
exactly one place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from config.settings import Settings
from connectors.base import BaseConnector
from connectors.encryption import TokenCipher
from connectors.files import AggregatedFileListingService
from connectors.google import GoogleDriveConnector
from connectors.microsoft import OneDriveConnector
from connectors.registry import ConnectorRegistry, ProviderRegistry
from connectors.status import ConnectionStatusService
from connectors.store import InMemoryLinkStore, LinkStore, SqlLinkStore
from connectors.token_manager import Clock, TokenLifecycleManager, utcnow
from database.session import build_engine, build_session_factory

logger = logging.getLogger(__name__)

MEMORY_DATABASE_URL = "memory://"


@dataclass
class LinkingServices:
    providers: ProviderRegistry
    connectors: ConnectorRegistry
    store: LinkStore
    tokens: TokenLifecycleManager
    status: ConnectionStatusService
    files: AggregatedFileListingService
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


def default_connectors(settings: Settings) -> list[BaseConnector]:
    return [GoogleDriveConnector(settings), OneDriveConnector(settings)]


def build_store(settings: Settings) -> tuple[LinkStore, Optional[AsyncEngine]]:
    if settings.database_url == MEMORY_DATABASE_URL:
        logger.warning("Using in-memory link store — links are lost on restart")
        return InMemoryLinkStore(), None
    engine = build_engine(settings.database_url, echo=settings.debug)
    store = SqlLinkStore(build_session_factory(engine), TokenCipher(settings.token_encryption_key))
    return store, engine


def build_services(
    settings: Settings,
    *,
    connectors: Optional[Iterable[BaseConnector]] = None,
    store: Optional[LinkStore] = None,
    clock: Clock = utcnow,
) -> LinkingServices:
    providers = ProviderRegistry.from_settings(settings)
    connector_registry = ConnectorRegistry(
        connectors if connectors is not None else default_connectors(settings)
    )
    for provider in providers.providers():
        # closed world: every registered provider must have a connector
        connector_registry.get(provider)

    engine = None
    if store is None:
        store, engine = build_store(settings)

    tokens = TokenLifecycleManager(
        providers,
        store,
        connector_registry,
        clock=clock,
        refresh_timeout=settings.refresh_timeout_seconds,
        remote_revoke=connector_registry.revoke,
    )
    status = ConnectionStatusService(tokens)
    files = AggregatedFileListingService(
        status,
        tokens,
        connector_registry,
        max_concurrency=settings.listing_max_concurrency,
        timeout=settings.listing_timeout_seconds,
    )
    return LinkingServices(
        providers=providers,
        connectors=connector_registry,
        store=store,
        tokens=tokens,
        status=status,
        files=files,
        engine=engine,
    )
