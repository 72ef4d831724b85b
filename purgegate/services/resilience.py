from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from purgegate.core.config import get_settings
from purgegate.core.errors import CleanupFailed
from purgegate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


_lock_clients: dict[int, Redis] = {}


async def get_resilience_redis() -> Redis | None:
    # One client per event loop; redis.asyncio connections are loop-bound.
    try:
        loop_key = id(asyncio.get_running_loop())
    except RuntimeError:
        return None
    client = _lock_clients.get(loop_key)
    if client is not None:
        return client
    try:
        client = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
    except ValueError as exc:
        logger.warning("lock_redis_unavailable error=%s", exc)
        return None
    _lock_clients.clear()
    _lock_clients[loop_key] = client
    return client


def _default_retryable(exc: Exception) -> bool:
    # Collaborators classify their own failures; bare timeouts and socket errors are transient.
    if isinstance(exc, CleanupFailed):
        return exc.transient
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.deletion_phase_timeout_ms,
        max_attempts=settings.deletion_phase_max_attempts,
        backoff_ms=settings.deletion_phase_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> Any:
    """Await ``func`` under the policy timeout, backing off between transient failures.

    The last exception propagates once attempts run out or a failure is not retryable.
    """
    resolved = policy or default_retry_policy()
    is_retryable = retryable or _default_retryable
    attempts = max(resolved.max_attempts, 1)
    timeout_s = resolved.timeout_ms / 1000.0
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=timeout_s)
        except Exception as exc:  # noqa: BLE001 - re-raised unless retryable
            if attempt == attempts or not is_retryable(exc):
                raise
            increment_counter("external_retries_total")
            if on_retry is not None:
                on_retry(attempt, exc)
            delay_s = resolved.backoff_ms * (2 ** (attempt - 1)) / 1000.0
            await asyncio.sleep(delay_s * random.uniform(0.5, 1.5))
