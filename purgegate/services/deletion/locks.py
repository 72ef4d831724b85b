from __future__ import annotations

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.asyncio import Redis

from purgegate.core.config import get_settings
from purgegate.core.errors import LockUnavailableError
from purgegate.services.resilience import get_resilience_redis
from purgegate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_LOCK_KEY_PREFIX = "purgegate:deletion-lock"
# Release only when the stored token still matches, so an expired holder cannot drop a newer lease.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _lock_key(account_id: str) -> str:
    return f"{_LOCK_KEY_PREFIX}:{account_id}"


class AccountLockManager:
    """Serializes deletion operations per account.

    The local backend keeps one asyncio.Lock per account in this process. The
    redis backend takes a SET NX EX lease so API replicas and workers agree.
    Both give up after ``wait_s`` and raise LockUnavailableError.
    """

    def __init__(
        self,
        *,
        backend: str | None = None,
        redis: Redis | None = None,
        ttl_s: int | None = None,
        wait_s: float | None = None,
        poll_interval_s: float = 0.05,
    ) -> None:
        settings = get_settings()
        self._backend = (backend or settings.deletion_lock_backend).lower()
        self._redis = redis
        self._ttl_s = ttl_s if ttl_s is not None else settings.deletion_lock_ttl_s
        self._wait_s = wait_s if wait_s is not None else settings.deletion_lock_wait_s
        self._poll_interval_s = poll_interval_s
        self._local_locks: dict[str, asyncio.Lock] = {}
        self._local_users: dict[str, int] = {}

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def tracked_accounts(self) -> int:
        return len(self._local_locks)

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        if self._backend == "redis":
            async with self._hold_redis(account_id):
                yield
            return
        async with self._hold_local(account_id):
            yield

    @asynccontextmanager
    async def _hold_local(self, account_id: str) -> AsyncIterator[None]:
        lock = self._local_locks.setdefault(account_id, asyncio.Lock())
        self._local_users[account_id] = self._local_users.get(account_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._wait_s)
            except asyncio.TimeoutError as exc:
                increment_counter("account_deletion.lock_timeouts_total")
                raise LockUnavailableError(f"Account {account_id} is busy; retry shortly") from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            # Forget the lock once nobody holds or waits on it.
            self._local_users[account_id] -= 1
            if self._local_users[account_id] == 0:
                del self._local_users[account_id]
                del self._local_locks[account_id]

    async def _resolve_redis(self) -> Redis:
        redis = self._redis or await get_resilience_redis()
        if redis is None:
            raise LockUnavailableError("Deletion lock backend is unavailable")
        return redis

    @asynccontextmanager
    async def _hold_redis(self, account_id: str) -> AsyncIterator[None]:
        redis = await self._resolve_redis()
        key = _lock_key(account_id)
        token = secrets.token_hex(16)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_s
        while True:
            acquired = await redis.set(key, token, nx=True, ex=self._ttl_s)
            if acquired:
                break
            if loop.time() >= deadline:
                increment_counter("account_deletion.lock_timeouts_total")
                raise LockUnavailableError(f"Account {account_id} is busy; retry shortly")
            await asyncio.sleep(self._poll_interval_s)
        try:
            yield
        finally:
            try:
                await redis.eval(_RELEASE_SCRIPT, 1, key, token)
            except Exception as exc:  # noqa: BLE001 - lease expiry releases the lock anyway
                logger.warning("deletion_lock_release_failed account_id=%s", account_id, exc_info=exc)


_lock_manager: AccountLockManager | None = None


def get_lock_manager() -> AccountLockManager:
    # Share one manager per process so local locks actually serialize callers.
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = AccountLockManager()
    return _lock_manager


def reset_lock_manager() -> None:
    # Allow tests to rebuild the manager after tweaking settings.
    global _lock_manager
    _lock_manager = None
