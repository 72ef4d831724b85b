from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal, Protocol

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from purgegate.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for health endpoint lookups.
WORKER_HEARTBEAT_KEY = "purgegate:worker:heartbeat"
PHASE_TASK_NAME = "run_deletion_phase"

PhaseHandler = Callable[[str, str], Awaitable[object]]


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class PhaseJobPayload(BaseModel):
    # Published schema for the state machine to worker handoff.
    job_id: str
    phase: Literal["external", "local"]
    reason: str = "transition"


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def _inline_mode() -> bool:
    return get_settings().deletion_execution_mode.lower() == "inline"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.deletion_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to operator endpoints.
    if _inline_mode():
        # Inline mode bypasses Redis, so queue depth is always zero.
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(get_settings().deletion_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - operator endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    # Persist a heartbeat for the health endpoint.
    if _inline_mode():
        return
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if _inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - health endpoint handles degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class PhaseDispatcher(Protocol):
    async def dispatch(self, job_id: str, phase: str, *, reason: str = "transition") -> None: ...


class ArqPhaseDispatcher:
    """Hands cleanup phases to the arq worker through Redis."""

    async def dispatch(self, job_id: str, phase: str, *, reason: str = "transition") -> None:
        payload = PhaseJobPayload(job_id=job_id, phase=phase, reason=reason)
        settings = get_settings()
        # Transition dispatches dedupe on a stable id; recovery re-enqueues need a fresh one.
        queue_job_id = f"account-deletion:{job_id}:{phase}"
        if reason != "transition":
            queue_job_id = f"{queue_job_id}:{reason}:{int(_utc_now().timestamp())}"
        redis = await get_redis_pool()
        job = await redis.enqueue_job(
            PHASE_TASK_NAME,
            payload.model_dump(),
            _job_id=queue_job_id,
            _queue_name=settings.deletion_queue_name,
        )
        if job is None:
            # arq returns None when the id is already queued; the pending run covers it.
            logger.info("deletion_phase_already_queued job_id=%s phase=%s", job_id, phase)
            return
        logger.info("deletion_phase_enqueued job_id=%s phase=%s reason=%s", job_id, phase, reason)


class InlinePhaseDispatcher:
    """Runs phases as in-process tasks; used for local development and tests."""

    def __init__(self, handler: PhaseHandler | None = None) -> None:
        self._handler = handler
        self._tasks: set[asyncio.Task] = set()

    def bind(self, handler: PhaseHandler) -> None:
        self._handler = handler

    async def dispatch(self, job_id: str, phase: str, *, reason: str = "transition") -> None:
        if self._handler is None:
            raise RuntimeError("Inline phase dispatcher has no handler bound")
        task = asyncio.create_task(self._handler(job_id, phase))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("deletion_phase_scheduled_inline job_id=%s phase=%s reason=%s", job_id, phase, reason)

    async def drain(self) -> None:
        # Phases may dispatch follow-up phases, so wait until nothing is left.
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
