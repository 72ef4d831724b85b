from __future__ import annotations

import asyncio

import pytest

from purgegate.core.errors import ConflictError, LockUnavailableError
from purgegate.services.deletion.locks import AccountLockManager
from purgegate.services.telemetry import counters_snapshot
from purgegate.tests.utils.fakes import FakeRedis


@pytest.mark.asyncio
async def test_local_lock_serializes_one_account() -> None:
    manager = AccountLockManager(backend="local", wait_s=1)
    order: list[str] = []

    async def _critical(name: str) -> None:
        async with manager.hold("acct-1"):
            order.append(f"{name}:enter")
            await asyncio.sleep(0.01)
            order.append(f"{name}:exit")

    await asyncio.gather(_critical("a"), _critical("b"))

    assert order in (
        ["a:enter", "a:exit", "b:enter", "b:exit"],
        ["b:enter", "b:exit", "a:enter", "a:exit"],
    )


@pytest.mark.asyncio
async def test_local_lock_times_out_as_conflict() -> None:
    manager = AccountLockManager(backend="local", wait_s=0.05)
    async with manager.hold("acct-1"):
        with pytest.raises(LockUnavailableError) as exc_info:
            async with manager.hold("acct-1"):
                pass
        # Other accounts are unaffected.
        async with manager.hold("acct-2"):
            pass
    assert isinstance(exc_info.value, ConflictError)
    assert counters_snapshot()["account_deletion.lock_timeouts_total"] == 1


@pytest.mark.asyncio
async def test_local_locks_are_forgotten_once_idle() -> None:
    manager = AccountLockManager(backend="local", wait_s=0.05)
    for index in range(20):
        async with manager.hold(f"acct-{index}"):
            assert manager.tracked_accounts == 1
    assert manager.tracked_accounts == 0

    async with manager.hold("acct-1"):
        with pytest.raises(LockUnavailableError):
            async with manager.hold("acct-1"):
                pass
        # A timed-out waiter does not drop the lock the holder still owns.
        assert manager.tracked_accounts == 1
    assert manager.tracked_accounts == 0


@pytest.mark.asyncio
async def test_redis_lock_releases_only_its_own_lease() -> None:
    redis = FakeRedis()
    manager = AccountLockManager(backend="redis", redis=redis, ttl_s=30, wait_s=0.05, poll_interval_s=0.01)

    async with manager.hold("acct-1"):
        assert await redis.get("purgegate:deletion-lock:acct-1") is not None
        with pytest.raises(LockUnavailableError):
            async with manager.hold("acct-1"):
                pass
    assert await redis.get("purgegate:deletion-lock:acct-1") is None

    async with manager.hold("acct-1"):
        # Simulate lease expiry and takeover by another holder.
        redis.advance(31)
        await redis.set("purgegate:deletion-lock:acct-1", "other-holder", nx=True, ex=30)
    assert await redis.get("purgegate:deletion-lock:acct-1") == "other-holder"
    assert redis.eval_calls == 2


@pytest.mark.asyncio
async def test_redis_lock_is_reacquired_after_expiry() -> None:
    redis = FakeRedis()
    await redis.set("purgegate:deletion-lock:acct-1", "crashed-holder", nx=True, ex=5)
    redis.advance(6)
    manager = AccountLockManager(backend="redis", redis=redis, ttl_s=30, wait_s=0.05, poll_interval_s=0.01)

    async with manager.hold("acct-1"):
        assert await redis.get("purgegate:deletion-lock:acct-1") != "crashed-holder"
