from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from arq.connections import RedisSettings

from purgegate.core.config import get_settings
from purgegate.core.logging import configure_logging
from purgegate.persistence.db import dispose_engine
from purgegate.services.deletion.dispatch import PhaseJobPayload, set_worker_heartbeat
from purgegate.services.deletion.runtime import DeletionRuntime, get_runtime


logger = logging.getLogger(__name__)


async def run_deletion_phase(ctx, payload: dict) -> str:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = PhaseJobPayload.model_validate(payload)
    runtime: DeletionRuntime = ctx.get("runtime") or get_runtime()
    logger.info(
        "deletion_phase_received job_id=%s phase=%s reason=%s try=%s",
        job_payload.job_id,
        job_payload.phase,
        job_payload.reason,
        ctx.get("job_try", 1),
    )
    return await runtime.phase_runner.run(job_payload.job_id, job_payload.phase)


async def run_scheduler_pass(runtime: DeletionRuntime) -> dict[str, int]:
    # One pass of lost-dispatch recovery followed by the abandonment sweep.
    settings = get_settings()
    redispatched = await runtime.state_machine.redispatch_stalled_jobs(
        older_than=timedelta(seconds=settings.deletion_stalled_after_s),
    )
    swept = await runtime.state_machine.sweep_abandoned_jobs(
        older_than=timedelta(hours=settings.deletion_abandoned_ttl_hours),
    )
    return {"redispatched": len(redispatched), "swept": len(swept)}


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - keep heartbeats alive across Redis blips
            logger.exception("worker_heartbeat_failed")
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _scheduler_loop(runtime: DeletionRuntime) -> None:
    settings = get_settings()
    interval_s = max(1, int(settings.deletion_scheduler_interval_s))
    while True:
        try:
            result = await run_scheduler_pass(runtime)
            if result["redispatched"] or result["swept"]:
                logger.info(
                    "deletion_scheduler_pass redispatched=%s swept=%s",
                    result["redispatched"],
                    result["swept"],
                )
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs
            logger.exception("deletion_scheduler_pass_failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    runtime = get_runtime()
    ctx["runtime"] = runtime
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop(runtime))


async def _shutdown(ctx) -> None:
    # Cancel background loops to avoid dangling coroutines on exit.
    for key in ("heartbeat_task", "scheduler_task"):
        task = ctx.get(key)
        if task:
            task.cancel()
    await dispose_engine()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.deletion_queue_name
    max_tries = max(1, int(settings.deletion_worker_max_tries))
    functions = [run_deletion_phase]
    on_startup = _startup
    on_shutdown = _shutdown
