"""
Tests for TenantLockRegistry.
"""

import asyncio

import pytest

from overage_billing.services.tenant_locks import TenantLockRegistry


class TestTenantLockRegistry:
    @pytest.mark.asyncio
    async def test_serialises_same_key(self):
        locks = TenantLockRegistry()
        order = []

        async def _work(name):
            async with locks.hold("t1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(_work("a"), _work("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_released_keys_are_dropped(self):
        locks = TenantLockRegistry()

        for i in range(50):
            async with locks.hold(f"t{i}"):
                assert locks.is_locked(f"t{i}")

        assert len(locks) == 0
        assert not locks.is_locked("t0")

    @pytest.mark.asyncio
    async def test_key_kept_while_a_waiter_remains(self):
        locks = TenantLockRegistry()
        first_in = asyncio.Event()
        release = asyncio.Event()

        async def _first():
            async with locks.hold("t1"):
                first_in.set()
                await release.wait()

        async def _second():
            async with locks.hold("t1"):
                return len(locks)

        first = asyncio.create_task(_first())
        await first_in.wait()
        second = asyncio.create_task(_second())
        await asyncio.sleep(0)
        release.set()
        await first

        assert await second == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_key_dropped_when_body_raises(self):
        locks = TenantLockRegistry()

        with pytest.raises(RuntimeError):
            async with locks.hold("t1"):
                raise RuntimeError("boom")

        assert len(locks) == 0
