"""Tests for keyed locks."""

import asyncio

import pytest

from fusioncross.utils.locks import KeyedLock, LockTimeoutError


class TestKeyedLock:
    """Tests for KeyedLock."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock("test")
        order = []

        async def worker(name):
            async with locks.hold("swap-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock("test", timeout=0.1)

        async with locks.hold("swap-1"):
            async with locks.hold("swap-2"):
                assert locks.locked("swap-1")
                assert locks.locked("swap-2")

    @pytest.mark.asyncio
    async def test_timeout(self):
        locks = KeyedLock("test", timeout=0.05)

        async with locks.hold("swap-1"):
            with pytest.raises(LockTimeoutError):
                async with locks.hold("swap-1", operation="second"):
                    pass

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = KeyedLock("test")

        with pytest.raises(RuntimeError):
            async with locks.hold("swap-1"):
                raise RuntimeError("boom")

        assert not locks.locked("swap-1")

    @pytest.mark.asyncio
    async def test_discard_skips_held_lock(self):
        locks = KeyedLock("test")

        async with locks.hold("swap-1"):
            locks.discard("swap-1")
            assert len(locks) == 1

        locks.discard("swap-1")
        assert len(locks) == 0
