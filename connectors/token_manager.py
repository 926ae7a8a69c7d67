"""
Token manager — create / refresh / revoke per-user provider links.

This is the only code path that writes token refs or expiry.  Everything
else reads links through ``ConnectionStatusService``; the aggregation
service gets access tokens through ``access_token_for``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from connectors.base import TokenExchangeAdapter
from connectors.errors import (
    ConcurrentLinkModification,
    GrantValidationError,
    LinkNotFound,
    LinkRevoked,
    TokenRefreshFailed,
)
from connectors.models import (
    REVOKED_TOKEN_SENTINEL,
    LinkRecord,
    LinkStatus,
    ProviderType,
    TokenGrant,
)
from connectors.registry import ProviderKey, ProviderRegistry
from connectors.store import LinkStore
from utils.locks import KeyedLock

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
RemoteRevoke = Callable[[ProviderType, str], Awaitable[bool]]

_REVOKE_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_ttl(value: Union[timedelta, int, float]) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class TokenLifecycleManager:
    def __init__(
        self,
        registry: ProviderRegistry,
        store: LinkStore,
        exchange: TokenExchangeAdapter,
        *,
        clock: Clock = utcnow,
        refresh_timeout: Optional[float] = 15.0,
        remote_revoke: Optional[RemoteRevoke] = None,
    ) -> None:
        """
        Parameters
        ----------
        exchange       : adapter used for refresh-token exchanges.
        refresh_timeout: seconds before a refresh call counts as failed;
                         ``None`` waits indefinitely.
        remote_revoke  : optional best-effort provider-side revocation,
                         called after the local tombstone is written.
        """
        self._registry = registry
        self._store = store
        self._exchange = exchange
        self._clock = clock
        self._refresh_timeout = refresh_timeout
        self._remote_revoke = remote_revoke
        self._locks = KeyedLock()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    # ── link ────────────────────────────────────────────────────────────

    async def establish_link(
        self,
        user_id: str,
        provider: ProviderKey,
        granted_scopes: Iterable[str],
        access_token_ref: str,
        refresh_token_ref: Optional[str] = None,
        ttl: Optional[Union[timedelta, int, float]] = None,
    ) -> LinkRecord:
        """
        Store a fresh link, replacing whatever was there before (including
        a revoked tombstone).
        """
        descriptor = self._registry.descriptor_for(provider)
        provider = descriptor.provider

        if not user_id:
            raise GrantValidationError("user_id is required", provider=provider.value)
        if not access_token_ref:
            raise GrantValidationError(
                "Grant material is missing an access token",
                provider=provider.value,
                user_id=user_id,
            )
        lifetime = descriptor.default_ttl if ttl is None else _as_ttl(ttl)
        if lifetime <= timedelta(0):
            raise GrantValidationError(
                f"Token TTL must be positive, got {lifetime}",
                provider=provider.value,
                user_id=user_id,
            )

        scopes = frozenset(s.strip() for s in granted_scopes if s and s.strip())
        unsupported = scopes - descriptor.supported_scopes
        if unsupported and descriptor.supported_scopes:
            logger.warning(
                "User %s linked %s with scopes outside the requested set: %s",
                user_id, provider.value, sorted(unsupported),
            )

        async with self._locks.hold((user_id, provider)):
            now = self._clock()
            record = LinkRecord(
                user_id=user_id,
                provider=provider,
                status=LinkStatus.LINKED,
                granted_scopes=scopes,
                access_token_ref=access_token_ref,
                refresh_token_ref=refresh_token_ref,
                expires_at_utc=now + lifetime,
                linked_at_utc=now,
            )
            stored = await self._store.upsert(record)

        logger.info("Linked %s for user %s (expires %s)", provider.value, user_id, stored.expires_at_utc)
        return stored

    # ── refresh ─────────────────────────────────────────────────────────

    async def ensure_fresh(self, user_id: str, provider: ProviderKey) -> LinkRecord:
        """
        Return a record whose access token is outside the refresh skew
        window, refreshing it first if needed.

        Raises ``LinkNotFound``, ``LinkRevoked`` or ``TokenRefreshFailed``;
        on refresh failure the stored record is left exactly as it was.
        """
        descriptor = self._registry.descriptor_for(provider)
        provider = descriptor.provider

        async with self._locks.hold((user_id, provider)):
            record = await self._require_active(user_id, provider)
            if record.remaining(self._clock()) >= descriptor.refresh_skew:
                return record
            return await self._refresh(record)

    async def access_token_for(self, user_id: str, provider: ProviderKey) -> str:
        record = await self.ensure_fresh(user_id, provider)
        return record.access_token_ref

    async def _require_active(self, user_id: str, provider: ProviderType) -> LinkRecord:
        record = await self._store.get(user_id, provider)
        if record is None:
            raise LinkNotFound(user_id, provider)
        if record.is_revoked:
            raise LinkRevoked(user_id, provider)
        return record

    async def _call_exchange(self, record: LinkRecord) -> TokenGrant:
        provider = record.provider
        if not record.refresh_token_ref:
            raise TokenRefreshFailed(
                f"No refresh token stored for {provider.value}; re-link required",
                provider=provider.value,
                user_id=record.user_id,
            )
        try:
            grant = await asyncio.wait_for(
                self._exchange.refresh(provider, record.refresh_token_ref),
                timeout=self._refresh_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Token refresh timed out for %s/%s", provider.value, record.user_id)
            raise TokenRefreshFailed(
                f"{provider.value} token refresh timed out",
                provider=provider.value,
                user_id=record.user_id,
            ) from exc
        except Exception as exc:
            logger.warning("Token refresh failed for %s/%s: %s", provider.value, record.user_id, exc)
            raise TokenRefreshFailed(
                f"{provider.value} token refresh failed: {exc}",
                provider=provider.value,
                user_id=record.user_id,
            ) from exc

        if not grant.access_token_ref or grant.ttl <= timedelta(0):
            raise TokenRefreshFailed(
                f"{provider.value} returned an unusable grant",
                provider=provider.value,
                user_id=record.user_id,
            )
        return grant

    async def _refresh(self, record: LinkRecord) -> LinkRecord:
        grant = await self._call_exchange(record)

        now = self._clock()
        refreshed = record.model_copy(
            update={
                "access_token_ref": grant.access_token_ref,
                # Some providers rotate refresh tokens
                "refresh_token_ref": grant.refresh_token_ref or record.refresh_token_ref,
                "expires_at_utc": now + grant.ttl,
                "last_refreshed_utc": now,
            }
        )
        try:
            stored = await self._store.upsert(refreshed, expected_version=record.version)
        except ConcurrentLinkModification:
            # Lost to a writer in another process; its state wins
            latest = await self._require_active(record.user_id, record.provider)
            logger.info(
                "Discarded %s refresh for user %s; link changed concurrently",
                record.provider.value, record.user_id,
            )
            return latest

        logger.info("Refreshed %s token for user %s", record.provider.value, record.user_id)
        return stored

    # ── revoke ──────────────────────────────────────────────────────────

    async def revoke(self, user_id: str, provider: ProviderKey) -> Optional[LinkRecord]:
        """
        Turn the link into a tombstone.  Idempotent: absent or already
        revoked links are left alone.  Returns the tombstone, or None when
        the user was never linked.
        """
        descriptor = self._registry.descriptor_for(provider)
        provider = descriptor.provider

        async with self._locks.hold((user_id, provider)):
            for _ in range(_REVOKE_ATTEMPTS):
                record = await self._store.get(user_id, provider)
                if record is None:
                    logger.info("Revoke %s for user %s: never linked", provider.value, user_id)
                    return None
                if record.is_revoked:
                    return record

                tombstone = record.model_copy(
                    update={
                        "status": LinkStatus.REVOKED,
                        "revoked_at_utc": self._clock(),
                        "access_token_ref": REVOKED_TOKEN_SENTINEL,
                        "refresh_token_ref": REVOKED_TOKEN_SENTINEL,
                    }
                )
                try:
                    stored = await self._store.upsert(tombstone, expected_version=record.version)
                    break
                except ConcurrentLinkModification:
                    logger.info("Revoke of %s for user %s raced a writer; retrying", provider.value, user_id)
            else:
                raise ConcurrentLinkModification(
                    f"Could not revoke {provider.value} link for user {user_id}",
                    provider=provider.value,
                    user_id=user_id,
                )

        logger.info("Revoked %s link for user %s", provider.value, user_id)
        await self._revoke_remote(provider, record)
        return stored

    async def _revoke_remote(self, provider: ProviderType, record: LinkRecord) -> None:
        if self._remote_revoke is None:
            return
        token = record.refresh_token_ref or record.access_token_ref
        try:
            revoked = await asyncio.wait_for(
                self._remote_revoke(provider, token),
                timeout=self._refresh_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("%s token revocation timed out", provider.value)
            return
        except Exception:
            logger.warning("%s token revocation failed", provider.value, exc_info=True)
            return
        if not revoked:
            logger.info("%s did not confirm token revocation", provider.value)

    # ── reads ───────────────────────────────────────────────────────────

    async def get_link(self, user_id: str, provider: ProviderKey) -> Optional[LinkRecord]:
        descriptor = self._registry.descriptor_for(provider)
        return await self._store.get(user_id, descriptor.provider)

    async def list_links(self, user_id: str) -> List[LinkRecord]:
        return [r for r in await self._store.list_for_user(user_id) if r.provider in self._registry]
