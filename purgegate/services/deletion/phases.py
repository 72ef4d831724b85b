from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from purgegate.core.errors import CleanupFailed
from purgegate.domain.models import JOB_STATUS_FAILED
from purgegate.domain.state import (
    PHASE_EXTERNAL,
    PHASE_LOCAL,
    PHASE_NEXT_STATUS,
    PHASE_STATUS,
    is_terminal,
    stage_index,
)
from purgegate.persistence.repos import deletion_jobs as jobs_repo
from purgegate.services.audit import record_deletion_event
from purgegate.services.deletion.cleanup import CleanupOrchestrator, PhaseResult
from purgegate.services.deletion.dispatch import PhaseDispatcher
from purgegate.services.resilience import RetryPolicy, default_retry_policy, retry_async
from purgegate.services.telemetry import increment_counter, record_timing


logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_NOOP = "noop"
OUTCOME_SKIPPED = "skipped"
OUTCOME_MISSING = "missing"

_MAX_REASON_CHARS = 1000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _failure_reason(phase: str, exc: Exception) -> str:
    # Keep reasons short and free of stack traces; they are shown to polling clients.
    if isinstance(exc, CleanupFailed):
        reason = str(exc)
    elif isinstance(exc, TimeoutError):
        reason = f"{phase} cleanup timed out"
    else:
        reason = f"{phase} cleanup failed: {type(exc).__name__}: {exc}"
    return reason[:_MAX_REASON_CHARS]


def _merge_phase_state(current: dict[str, Any] | None, phase: str, values: dict[str, Any]) -> dict[str, Any]:
    # Copy so SQLAlchemy sees a new JSON value on update.
    merged = dict(current or {})
    entry = dict(merged.get(phase) or {})
    entry.update(values)
    merged[phase] = entry
    return merged


class PhaseRunner:
    """Executes one cleanup phase for a job with bounded retries.

    Re-running a phase the job has already passed is a no-op, and a phase the
    job has not reached yet is skipped, so duplicate or early deliveries are
    harmless. The local phase is dispatched only after the external phase
    commits its transition.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: CleanupOrchestrator,
        dispatcher: PhaseDispatcher,
        *,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._orchestrator = orchestrator
        self._dispatcher = dispatcher
        self._policy = policy

    async def run(self, job_id: str, phase: str) -> str:
        if phase not in PHASE_STATUS:
            raise ValueError(f"Unknown cleanup phase: {phase}")
        phase_status = PHASE_STATUS[phase]
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
        if job is None:
            logger.warning("deletion_phase_job_missing job_id=%s phase=%s", job_id, phase)
            return OUTCOME_MISSING
        if job.status == JOB_STATUS_FAILED:
            logger.info("deletion_phase_noop_failed job_id=%s phase=%s", job_id, phase)
            return OUTCOME_NOOP
        current_index = stage_index(job.status)
        if current_index > stage_index(phase_status):
            logger.info("deletion_phase_noop job_id=%s phase=%s status=%s", job_id, phase, job.status)
            return OUTCOME_NOOP
        if current_index < stage_index(phase_status):
            logger.warning("deletion_phase_skipped job_id=%s phase=%s status=%s", job_id, phase, job.status)
            return OUTCOME_SKIPPED

        account_id = job.account_id
        started_at = _utc_now()
        attempts = 0
        call = (
            self._orchestrator.run_external_phase
            if phase == PHASE_EXTERNAL
            else self._orchestrator.run_local_phase
        )

        async def _attempt() -> PhaseResult:
            nonlocal attempts
            attempts += 1
            result = await call(account_id)
            if not result.ok:
                raise CleanupFailed(result.error or f"{phase} cleanup failed", transient=result.transient)
            return result

        def _on_retry(attempt: int, exc: Exception) -> None:
            logger.warning(
                "deletion_phase_retry job_id=%s phase=%s attempt=%s error=%s",
                job_id,
                phase,
                attempt,
                exc,
            )

        timer_start = time.monotonic()
        try:
            result = await retry_async(
                _attempt,
                policy=self._policy or default_retry_policy(),
                on_retry=_on_retry,
            )
        except Exception as exc:  # noqa: BLE001 - exhaustion is recorded on the job
            record_timing(f"account_deletion.phase.{phase}", latency_ms=(time.monotonic() - timer_start) * 1000, success=False)
            await self._fail(job_id, phase, reason=_failure_reason(phase, exc), attempts=attempts, started_at=started_at)
            return OUTCOME_FAILED
        record_timing(f"account_deletion.phase.{phase}", latency_ms=(time.monotonic() - timer_start) * 1000)

        next_status = PHASE_NEXT_STATUS[phase]
        now = _utc_now()
        async with self._session_factory() as session:
            fresh = await jobs_repo.get_job(session, job_id)
            if fresh is None or fresh.status != phase_status:
                return OUTCOME_NOOP
            metadata = dict(fresh.metadata_json or {})
            metadata[phase] = result.details
            advanced = await jobs_repo.compare_and_set(
                session,
                job_id,
                expected_status=phase_status,
                values={
                    "status": next_status,
                    "external_state_json": _merge_phase_state(
                        fresh.external_state_json,
                        phase,
                        {
                            "attempts": attempts,
                            "started_at": started_at.isoformat(),
                            "finished_at": now.isoformat(),
                            "outcome": "succeeded",
                        },
                    ),
                    "metadata_json": metadata,
                },
                now=now,
            )
            if not advanced:
                await session.rollback()
                logger.info("deletion_phase_superseded job_id=%s phase=%s", job_id, phase)
                return OUTCOME_NOOP
            await record_deletion_event(
                session=session,
                account_id=account_id,
                job_id=job_id,
                event=f"{phase}_cleanup_completed",
                status=next_status,
                details={"attempts": attempts, **result.details},
                occurred_at=now,
            )
            await session.commit()

        increment_counter(f"account_deletion.phase_completed_total.{phase}")
        logger.info(
            "deletion_phase_completed job_id=%s phase=%s attempts=%s next_status=%s",
            job_id,
            phase,
            attempts,
            next_status,
        )
        if is_terminal(next_status):
            increment_counter("account_deletion.jobs_completed_total")
        elif phase == PHASE_EXTERNAL:
            await self._dispatcher.dispatch(job_id, PHASE_LOCAL)
        return OUTCOME_COMPLETED

    async def _fail(
        self,
        job_id: str,
        phase: str,
        *,
        reason: str,
        attempts: int,
        started_at: datetime,
    ) -> None:
        phase_status = PHASE_STATUS[phase]
        now = _utc_now()
        async with self._session_factory() as session:
            fresh = await jobs_repo.get_job(session, job_id)
            if fresh is None or fresh.status != phase_status:
                return
            moved = await jobs_repo.compare_and_set(
                session,
                job_id,
                expected_status=phase_status,
                values={
                    "status": JOB_STATUS_FAILED,
                    "failure_reason": reason,
                    "external_state_json": _merge_phase_state(
                        fresh.external_state_json,
                        phase,
                        {
                            "attempts": attempts,
                            "started_at": started_at.isoformat(),
                            "finished_at": now.isoformat(),
                            "outcome": "failed",
                        },
                    ),
                },
                now=now,
            )
            if not moved:
                await session.rollback()
                return
            await record_deletion_event(
                session=session,
                account_id=fresh.account_id,
                job_id=job_id,
                event=f"{phase}_cleanup_failed",
                status=JOB_STATUS_FAILED,
                reason=reason,
                details={"attempts": attempts},
                occurred_at=now,
            )
            await session.commit()
        increment_counter(f"account_deletion.jobs_failed_total.{phase}")
        logger.error(
            "deletion_phase_failed job_id=%s phase=%s attempts=%s reason=%s",
            job_id,
            phase,
            attempts,
            reason,
        )
