"""
Tests for the small shared helpers: per-key locks and bearer tokens.
"""

import asyncio

import pytest

from auth.jwt import InvalidToken, create_token, verify_token
from utils.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        entered = asyncio.Event()

        async def holder():
            async with locks.hold("a"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def other():
            async with locks.hold("b"):
                entered.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        locks = KeyedLock()
        async with locks.hold(("u", "google")):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")

        async with locks.hold("k"):
            pass
        assert len(locks) == 0


class TestBearerTokens:
    def test_round_trip(self):
        assert verify_token(create_token("user-1", secret="s"), secret="s") == "user-1"

    def test_wrong_secret(self):
        with pytest.raises(InvalidToken, match="signature"):
            verify_token(create_token("user-1", secret="s"), secret="t")

    def test_expired(self):
        with pytest.raises(InvalidToken, match="expired"):
            verify_token(create_token("user-1", secret="s", expires_in=-1), secret="s")

    @pytest.mark.parametrize("token", ["", "no-dot", "!!!.abc"])
    def test_malformed(self, token):
        with pytest.raises(InvalidToken):
            verify_token(token, secret="s")
