"""
Tests for TokenLifecycleManager — link, lazy refresh, revoke.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from connectors.errors import (
    ConcurrentLinkModification,
    GrantValidationError,
    LinkNotFound,
    LinkRevoked,
    ProviderNotRegistered,
    TokenRefreshFailed,
)
from connectors.models import REVOKED_TOKEN_SENTINEL, LinkStatus, ProviderType, TokenGrant
from connectors.token_manager import TokenLifecycleManager

from conftest import T0

USER = "user-1"
GOOGLE = ProviderType.GOOGLE


async def _link(manager, ttl=timedelta(hours=1), provider=GOOGLE, user=USER):
    return await manager.establish_link(
        user, provider, ["read"], "access-1", "refresh-1", ttl=ttl
    )


class TestEstablishLink:
    @pytest.mark.asyncio
    async def test_creates_linked_record(self, manager, store):
        record = await _link(manager)

        assert record.is_linked
        assert record.status is LinkStatus.LINKED
        assert record.granted_scopes == frozenset({"read"})
        assert record.expires_at_utc == T0 + timedelta(hours=1)
        assert record.revoked_at_utc is None
        assert record.linked_at_utc == T0
        assert record.version == 1
        assert await store.get(USER, GOOGLE) == record

    @pytest.mark.asyncio
    async def test_relinking_overwrites_instead_of_duplicating(self, manager, store):
        await _link(manager)
        await manager.establish_link(USER, GOOGLE, ["read", "write"], "access-9", "refresh-9")

        assert len(store) == 1
        records = await store.list_for_user(USER)
        assert len(records) == 1
        assert records[0].access_token_ref == "access-9"
        assert records[0].granted_scopes == frozenset({"read", "write"})
        assert records[0].version == 2

    @pytest.mark.asyncio
    async def test_relink_after_revoke_starts_new_lifecycle(self, manager, store):
        await _link(manager)
        await manager.revoke(USER, GOOGLE)
        record = await _link(manager)

        assert record.is_linked
        assert record.revoked_at_utc is None
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_default_ttl_comes_from_descriptor(self, manager):
        record = await manager.establish_link(USER, GOOGLE, ["read"], "a", "r")
        assert record.expires_at_utc == T0 + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_ttl_in_seconds_is_accepted(self, manager):
        record = await manager.establish_link(USER, GOOGLE, ["read"], "a", "r", ttl=120)
        assert record.expires_at_utc == T0 + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_unknown_provider_fails(self, manager, store):
        with pytest.raises(ProviderNotRegistered):
            await manager.establish_link(USER, "dropbox", ["read"], "a", "r")
        assert len(store) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "access, ttl",
        [("", timedelta(hours=1)), ("a", timedelta(0)), ("a", -5)],
    )
    async def test_rejects_unusable_grant(self, manager, store, access, ttl):
        with pytest.raises(GrantValidationError):
            await manager.establish_link(USER, GOOGLE, ["read"], access, "r", ttl=ttl)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_blank_scopes_are_dropped(self, manager):
        record = await manager.establish_link(USER, GOOGLE, ["read", " ", ""], "a", "r")
        assert record.granted_scopes == frozenset({"read"})


class TestEnsureFresh:
    @pytest.mark.asyncio
    async def test_far_from_expiry_does_not_refresh(self, manager, exchange):
        linked = await _link(manager)

        record = await manager.ensure_fresh(USER, GOOGLE)

        assert exchange.calls == []
        assert record == linked

    @pytest.mark.asyncio
    async def test_exactly_at_skew_boundary_does_not_refresh(self, manager, exchange, clock):
        await _link(manager)
        clock.advance(minutes=55)

        await manager.ensure_fresh(USER, GOOGLE)

        assert exchange.calls == []

    @pytest.mark.asyncio
    async def test_within_skew_refreshes_once(self, manager, exchange, clock, store):
        linked = await _link(manager)
        clock.advance(minutes=56)

        record = await manager.ensure_fresh(USER, GOOGLE)

        assert exchange.calls == [(GOOGLE, "refresh-1")]
        assert record.access_token_ref == "access-2"
        assert record.refresh_token_ref == "refresh-2"
        assert record.expires_at_utc == clock.now + timedelta(hours=1)
        assert record.expires_at_utc > linked.expires_at_utc
        assert record.last_refreshed_utc == clock.now
        assert record.version == linked.version + 1
        assert await store.get(USER, GOOGLE) == record

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self, manager, exchange, clock):
        await _link(manager)
        clock.advance(hours=3)

        record = await manager.ensure_fresh(USER, GOOGLE)

        assert len(exchange.calls) == 1
        assert record.expires_at_utc == clock.now + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_unrotated_refresh_token_is_kept(self, manager, exchange, clock):
        exchange.grant = TokenGrant(access_token_ref="access-2", ttl=timedelta(hours=1))
        await _link(manager)
        clock.advance(minutes=58)

        record = await manager.ensure_fresh(USER, GOOGLE)

        assert record.refresh_token_ref == "refresh-1"

    @pytest.mark.asyncio
    async def test_refresh_failure_leaves_record_untouched(self, manager, exchange, clock, store):
        await _link(manager)
        clock.advance(minutes=58)
        before = await store.get(USER, GOOGLE)
        exchange.error = RuntimeError("invalid_grant")

        with pytest.raises(TokenRefreshFailed, match="invalid_grant") as info:
            await manager.ensure_fresh(USER, GOOGLE)

        assert isinstance(info.value.__cause__, RuntimeError)
        assert len(exchange.calls) == 1
        after = await store.get(USER, GOOGLE)
        assert after == before
        assert after.model_dump() == before.model_dump()

    @pytest.mark.asyncio
    async def test_refresh_timeout_is_a_refresh_failure(self, registry, store, exchange, clock):
        manager = TokenLifecycleManager(registry, store, exchange, clock=clock, refresh_timeout=0.01)
        await _link(manager)
        clock.advance(minutes=58)
        exchange.delay = 1.0

        with pytest.raises(TokenRefreshFailed, match="timed out"):
            await manager.ensure_fresh(USER, GOOGLE)
        assert (await store.get(USER, GOOGLE)).access_token_ref == "access-1"

    @pytest.mark.asyncio
    async def test_missing_refresh_token_fails_without_calling_adapter(self, manager, exchange, clock):
        await manager.establish_link(USER, GOOGLE, ["read"], "access-1", None)
        clock.advance(minutes=58)

        with pytest.raises(TokenRefreshFailed, match="re-link"):
            await manager.ensure_fresh(USER, GOOGLE)
        assert exchange.calls == []

    @pytest.mark.asyncio
    async def test_not_linked_raises_link_not_found(self, manager):
        with pytest.raises(LinkNotFound):
            await manager.ensure_fresh(USER, GOOGLE)

    @pytest.mark.asyncio
    async def test_revoked_raises_without_refresh(self, manager, exchange, clock):
        await _link(manager)
        await manager.revoke(USER, GOOGLE)
        clock.advance(hours=2)

        with pytest.raises(LinkRevoked):
            await manager.ensure_fresh(USER, GOOGLE)
        assert exchange.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, manager, exchange, clock):
        await _link(manager)
        clock.advance(minutes=58)
        exchange.delay = 0.01

        results = await asyncio.gather(*(manager.ensure_fresh(USER, GOOGLE) for _ in range(5)))

        assert len(exchange.calls) == 1
        assert {r.access_token_ref for r in results} == {"access-2"}

    @pytest.mark.asyncio
    async def test_stale_refresh_loses_to_concurrent_revoke(self, manager, exchange, clock, store):
        await _link(manager)
        clock.advance(minutes=58)
        original_upsert = store.upsert

        async def revoke_then_write(record, *, expected_version=None):
            # another process revokes while our refresh is in flight
            current = await store.get(USER, GOOGLE)
            tombstone = current.model_copy(
                update={"status": LinkStatus.REVOKED, "revoked_at_utc": clock.now}
            )
            await original_upsert(tombstone)
            return await original_upsert(record, expected_version=expected_version)

        store.upsert = revoke_then_write

        with pytest.raises(LinkRevoked):
            await manager.ensure_fresh(USER, GOOGLE)
        store.upsert = original_upsert
        assert (await store.get(USER, GOOGLE)).is_revoked

    @pytest.mark.asyncio
    async def test_access_token_for_returns_fresh_token(self, manager, clock):
        await _link(manager)
        assert await manager.access_token_for(USER, GOOGLE) == "access-1"
        clock.advance(minutes=58)
        assert await manager.access_token_for(USER, GOOGLE) == "access-2"


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_writes_tombstone(self, manager, store, clock):
        await _link(manager)
        clock.advance(minutes=1)

        tombstone = await manager.revoke(USER, GOOGLE)

        assert tombstone.is_revoked
        assert not tombstone.is_linked
        assert tombstone.revoked_at_utc == clock.now
        assert tombstone.access_token_ref == REVOKED_TOKEN_SENTINEL
        assert tombstone.refresh_token_ref == REVOKED_TOKEN_SENTINEL
        assert await store.get(USER, GOOGLE) == tombstone

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, manager, store, clock):
        await _link(manager)
        first = await manager.revoke(USER, GOOGLE)
        clock.advance(minutes=10)

        second = await manager.revoke(USER, GOOGLE)

        assert second == first
        assert await store.get(USER, GOOGLE) == first

    @pytest.mark.asyncio
    async def test_revoke_of_never_linked_is_noop(self, manager, store):
        assert await manager.revoke(USER, GOOGLE) is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_revoke_unknown_provider_fails(self, manager):
        with pytest.raises(ProviderNotRegistered):
            await manager.revoke(USER, "dropbox")

    @pytest.mark.asyncio
    async def test_remote_revocation_is_best_effort(self, registry, store, exchange, clock):
        remote = AsyncMock(side_effect=RuntimeError("network down"))
        manager = TokenLifecycleManager(registry, store, exchange, clock=clock, remote_revoke=remote)
        await _link(manager)

        tombstone = await manager.revoke(USER, GOOGLE)

        assert tombstone.is_revoked
        remote.assert_awaited_once_with(GOOGLE, "refresh-1")

    @pytest.mark.asyncio
    async def test_slow_remote_revocation_is_abandoned(self, registry, store, exchange, clock):
        started = asyncio.Event()

        async def hang(provider, token):
            started.set()
            await asyncio.sleep(10)
            return True

        manager = TokenLifecycleManager(
            registry, store, exchange, clock=clock, refresh_timeout=0.01, remote_revoke=hang
        )
        await _link(manager)

        tombstone = await asyncio.wait_for(manager.revoke(USER, GOOGLE), timeout=1)

        assert started.is_set()
        assert tombstone.is_revoked
        assert (await store.get(USER, GOOGLE)).is_revoked

    @pytest.mark.asyncio
    async def test_remote_revocation_not_repeated(self, registry, store, exchange, clock):
        remote = AsyncMock(return_value=True)
        manager = TokenLifecycleManager(registry, store, exchange, clock=clock, remote_revoke=remote)
        await _link(manager)

        await manager.revoke(USER, GOOGLE)
        await manager.revoke(USER, GOOGLE)

        assert remote.await_count == 1

    @pytest.mark.asyncio
    async def test_revoke_gives_up_after_repeated_conflicts(self, manager, store):
        await _link(manager)
        store.upsert = AsyncMock(
            side_effect=ConcurrentLinkModification("busy", provider="google", user_id=USER)
        )

        with pytest.raises(ConcurrentLinkModification):
            await manager.revoke(USER, GOOGLE)
        assert store.upsert.await_count == 3


class TestLinkingScenario:
    @pytest.mark.asyncio
    async def test_link_unlink_then_refresh_is_rejected(self, manager, status_service):
        await manager.establish_link(USER, GOOGLE, ["read"], "access-1", "refresh-1", ttl=timedelta(hours=1))

        status = await status_service.status_for(USER, GOOGLE)
        assert status.is_linked is True
        assert status.scopes == ["read"]

        await manager.revoke(USER, GOOGLE)

        status = await status_service.status_for(USER, GOOGLE)
        assert status.is_linked is False
        assert status.scopes == []
        with pytest.raises(LinkRevoked):
            await manager.ensure_fresh(USER, GOOGLE)
