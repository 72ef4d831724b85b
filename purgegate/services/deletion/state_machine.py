from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, func, literal
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from purgegate.core.errors import (
    AccountProtectedError,
    AuthenticationFailed,
    ConflictError,
    LockUnavailableError,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    SnapshotFailed,
)
from purgegate.domain.models import (
    DATA_HANDLING_PREFERENCES,
    JOB_STATUS_EXTERNAL_CLEANUP,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_SNAPSHOT,
    JOB_STATUS_SNAPSHOT_READY,
    AccountDeletionJob,
)
from purgegate.domain.state import (
    ABANDONABLE_STATUSES,
    CLEANUP_STATUSES,
    GATE_SNAPSHOT_ACKNOWLEDGED,
    GATE_SNAPSHOT_DOWNLOADED,
    GATE_SNAPSHOT_READY,
    PHASE_EXTERNAL,
    STATUS_PHASE,
    can_transition,
    is_terminal,
    stage_index,
)
from purgegate.persistence.repos import accounts as accounts_repo
from purgegate.persistence.repos import deletion_jobs as jobs_repo
from purgegate.services.audit import record_deletion_event
from purgegate.services.deletion.dispatch import PhaseDispatcher
from purgegate.services.deletion.locks import AccountLockManager
from purgegate.services.deletion.permissions import PermissionChecker
from purgegate.services.deletion.reauth import ReAuthVerifier
from purgegate.services.deletion.snapshot import SnapshotCoordinator, SnapshotResult
from purgegate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ABANDONED_REASON = "abandoned"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_edge(current: str, target: str, *, sweep: bool = False) -> None:
    # Every status write passes through the transition table first.
    if not can_transition(current, target, sweep=sweep):
        raise ConflictError(f"Deletion job cannot move from {current} to {target}")


def _require_snapshot_stage(job: AccountDeletionJob, *, allow_later: bool) -> None:
    # Terminal jobs conflict; earlier stages miss the readiness gate.
    if is_terminal(job.status):
        raise ConflictError(f"Deletion job is already {job.status}")
    current = stage_index(job.status)
    ready = stage_index(JOB_STATUS_SNAPSHOT_READY)
    if current < ready:
        raise PreconditionFailed([GATE_SNAPSHOT_READY])
    if current > ready and not allow_later:
        raise ConflictError(f"Deletion job already moved past {JOB_STATUS_SNAPSHOT_READY}")


class DeletionJobStateMachine:
    """Owns account deletion jobs and every transition they take.

    Client operations hold the per-account lock and write status with a
    compare-and-set, so a racing caller sees the new status and gets a
    ConflictError instead of a double transition. Gates are evaluated before
    any collaborator is invoked. Cleanup phases are only dispatched here;
    they run in the worker through PhaseRunner.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        snapshot_coordinator: SnapshotCoordinator,
        reauth_verifier: ReAuthVerifier,
        permission_checker: PermissionChecker,
        dispatcher: PhaseDispatcher,
        lock_manager: AccountLockManager,
    ) -> None:
        self._session_factory = session_factory
        self._snapshots = snapshot_coordinator
        self._reauth = reauth_verifier
        self._permissions = permission_checker
        self._dispatcher = dispatcher
        self._locks = lock_manager

    @property
    def permissions(self) -> PermissionChecker:
        return self._permissions

    async def _require_job(self, session: AsyncSession, job_id: str) -> AccountDeletionJob:
        job = await jobs_repo.get_job(session, job_id)
        if job is None:
            raise NotFoundError(f"Deletion job {job_id} not found")
        return job

    async def _account_for_job(self, job_id: str) -> str:
        async with self._session_factory() as session:
            job = await self._require_job(session, job_id)
        return job.account_id

    async def request_deletion(
        self,
        account_id: str,
        requested_by_actor_id: str,
        preference: str,
        *,
        request_id: str | None = None,
    ) -> AccountDeletionJob:
        if preference not in DATA_HANDLING_PREFERENCES:
            raise ValueError(f"Unsupported data handling preference: {preference}")

        async with self._locks.hold(account_id):
            async with self._session_factory() as session:
                account = await accounts_repo.get_account(session, account_id)
            if account is None:
                raise NotFoundError(f"Account {account_id} not found")

            if await self._permissions.is_protected(account_id):
                increment_counter("account_deletion.protected_attempts_total")
                logger.critical(
                    "deletion_protected_account_attempt account_id=%s actor_id=%s",
                    account_id,
                    requested_by_actor_id,
                )
                await record_deletion_event(
                    account_id=account_id,
                    actor_id=requested_by_actor_id,
                    event="critical_attempt",
                    reason="protected account",
                    request_id=request_id,
                )
                raise AccountProtectedError(f"Account {account_id} is protected and cannot be deleted")

            if not await self._permissions.can_request(requested_by_actor_id, account_id):
                raise PermissionDenied("Only the account owner or a force-delete delegate may request deletion")

            now = _utc_now()
            async with self._session_factory() as session:
                existing = await jobs_repo.get_active_job_for_account(session, account_id)
                if existing is not None:
                    raise ConflictError(
                        f"Account {account_id} already has deletion job {existing.id} in {existing.status}"
                    )
                job = await jobs_repo.create_job(
                    session,
                    job_id=uuid4().hex,
                    account_id=account_id,
                    requested_by_actor_id=requested_by_actor_id,
                    data_handling_preference=preference,
                    now=now,
                )
                # The pending stage is never observable; advance within the same transaction.
                _require_edge(JOB_STATUS_PENDING, JOB_STATUS_SNAPSHOT)
                job.status = JOB_STATUS_SNAPSHOT
                await record_deletion_event(
                    session=session,
                    account_id=account_id,
                    job_id=job.id,
                    actor_id=requested_by_actor_id,
                    event="deletion_requested",
                    status=JOB_STATUS_SNAPSHOT,
                    details={"data_handling_preference": preference},
                    request_id=request_id,
                    occurred_at=now,
                )
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise ConflictError(f"Account {account_id} already has an active deletion job") from exc

        increment_counter("account_deletion.jobs_requested_total")
        logger.info(
            "deletion_requested job_id=%s account_id=%s actor_id=%s preference=%s",
            job.id,
            account_id,
            requested_by_actor_id,
            preference,
        )
        return job

    async def generate_snapshot(self, job_id: str, *, request_id: str | None = None) -> AccountDeletionJob:
        account_id = await self._account_for_job(job_id)
        async with self._locks.hold(account_id):
            async with self._session_factory() as session:
                job = await self._require_job(session, job_id)
                if job.status == JOB_STATUS_SNAPSHOT_READY:
                    return job
                if job.status == JOB_STATUS_PENDING:
                    _require_edge(JOB_STATUS_PENDING, JOB_STATUS_SNAPSHOT)
                    if not await jobs_repo.compare_and_set(
                        session,
                        job_id,
                        expected_status=JOB_STATUS_PENDING,
                        values={"status": JOB_STATUS_SNAPSHOT},
                        now=_utc_now(),
                    ):
                        raise ConflictError("Deletion job changed concurrently")
                    await session.commit()
                elif job.status != JOB_STATUS_SNAPSHOT:
                    raise ConflictError(f"Deletion job is {job.status}; snapshot can no longer be generated")
                preference = job.data_handling_preference

            try:
                result = await self._snapshots.generate(account_id, job_id, preference)
            except Exception as exc:  # noqa: BLE001 - coordinator errors fail the job
                logger.exception("snapshot_coordinator_error job_id=%s", job_id)
                result = SnapshotResult(artifact_ready=False, error=f"Snapshot generation failed: {type(exc).__name__}")

            now = _utc_now()
            async with self._session_factory() as session:
                if result.artifact_ready:
                    _require_edge(JOB_STATUS_SNAPSHOT, JOB_STATUS_SNAPSHOT_READY)
                    moved = await jobs_repo.compare_and_set(
                        session,
                        job_id,
                        expected_status=JOB_STATUS_SNAPSHOT,
                        values={
                            "status": JOB_STATUS_SNAPSHOT_READY,
                            "snapshot_ready_at": now,
                            "snapshot_location": result.location,
                            "snapshot_size_bytes": result.size_bytes,
                        },
                        now=now,
                    )
                    if not moved:
                        await session.rollback()
                        raise ConflictError("Deletion job changed concurrently")
                    await record_deletion_event(
                        session=session,
                        account_id=account_id,
                        job_id=job_id,
                        event="snapshot_ready",
                        status=JOB_STATUS_SNAPSHOT_READY,
                        details={"size_bytes": result.size_bytes},
                        request_id=request_id,
                        occurred_at=now,
                    )
                    await session.commit()
                    increment_counter("account_deletion.snapshots_ready_total")
                    logger.info("deletion_snapshot_ready job_id=%s size_bytes=%s", job_id, result.size_bytes)
                    return await self._require_job(session, job_id)

                reason = result.error or "Snapshot generation failed"
                _require_edge(JOB_STATUS_SNAPSHOT, JOB_STATUS_FAILED)
                moved = await jobs_repo.compare_and_set(
                    session,
                    job_id,
                    expected_status=JOB_STATUS_SNAPSHOT,
                    values={"status": JOB_STATUS_FAILED, "failure_reason": reason},
                    now=now,
                )
                if not moved:
                    await session.rollback()
                    raise ConflictError("Deletion job changed concurrently")
                await record_deletion_event(
                    session=session,
                    account_id=account_id,
                    job_id=job_id,
                    event="snapshot_failed",
                    status=JOB_STATUS_FAILED,
                    reason=reason,
                    request_id=request_id,
                    occurred_at=now,
                )
                await session.commit()
        increment_counter("account_deletion.jobs_failed_total.snapshot")
        logger.error("deletion_snapshot_failed job_id=%s reason=%s", job_id, reason)
        raise SnapshotFailed(reason)

    async def record_download(self, job_id: str, *, request_id: str | None = None) -> AccountDeletionJob:
        account_id = await self._account_for_job(job_id)
        async with self._locks.hold(account_id):
            async with self._session_factory() as session:
                job = await self._require_job(session, job_id)
                _require_snapshot_stage(job, allow_later=True)
                now = _utc_now()
                # Count every download; only the first one stamps the timestamp.
                updated = await jobs_repo.compare_and_set(
                    session,
                    job_id,
                    expected_status=job.status,
                    values={
                        "snapshot_download_count": AccountDeletionJob.snapshot_download_count + 1,
                        "snapshot_downloaded_at": func.coalesce(
                            AccountDeletionJob.snapshot_downloaded_at,
                            literal(now, DateTime(timezone=True)),
                        ),
                    },
                    now=now,
                )
                if not updated:
                    await session.rollback()
                    raise ConflictError("Deletion job changed concurrently")
                await record_deletion_event(
                    session=session,
                    account_id=account_id,
                    job_id=job_id,
                    event="snapshot_downloaded",
                    status=job.status,
                    request_id=request_id,
                    occurred_at=now,
                )
                await session.commit()
                job = await self._require_job(session, job_id)
        logger.info(
            "deletion_snapshot_downloaded job_id=%s count=%s",
            job_id,
            job.snapshot_download_count,
        )
        return job

    async def acknowledge_snapshot(
        self,
        job_id: str,
        consent: Any,
        *,
        actor_id: str | None = None,
        request_id: str | None = None,
    ) -> AccountDeletionJob:
        account_id = await self._account_for_job(job_id)
        async with self._locks.hold(account_id):
            async with self._session_factory() as session:
                job = await self._require_job(session, job_id)
                _require_snapshot_stage(job, allow_later=False)
                # Only an explicit True counts as consent; first acknowledgment wins.
                if consent is not True or job.snapshot_acknowledged_at is not None:
                    return job
                now = _utc_now()
                updated = await jobs_repo.compare_and_set(
                    session,
                    job_id,
                    expected_status=JOB_STATUS_SNAPSHOT_READY,
                    values={"snapshot_acknowledged_at": now},
                    now=now,
                )
                if not updated:
                    await session.rollback()
                    raise ConflictError("Deletion job changed concurrently")
                await record_deletion_event(
                    session=session,
                    account_id=account_id,
                    job_id=job_id,
                    actor_id=actor_id,
                    event="snapshot_acknowledged",
                    status=JOB_STATUS_SNAPSHOT_READY,
                    request_id=request_id,
                    occurred_at=now,
                )
                await session.commit()
                return await self._require_job(session, job_id)

    async def confirm_deletion(
        self,
        job_id: str,
        actor_id: str,
        secret: str | None,
        *,
        request_id: str | None = None,
    ) -> AccountDeletionJob:
        account_id = await self._account_for_job(job_id)
        async with self._locks.hold(account_id):
            async with self._session_factory() as session:
                job = await self._require_job(session, job_id)
            _require_snapshot_stage(job, allow_later=False)
            unmet: list[str] = []
            if job.snapshot_downloaded_at is None:
                unmet.append(GATE_SNAPSHOT_DOWNLOADED)
            if job.snapshot_acknowledged_at is None:
                unmet.append(GATE_SNAPSHOT_ACKNOWLEDGED)
            if unmet:
                raise PreconditionFailed(unmet)

            if not await self._reauth.verify(actor_id, secret):
                await record_deletion_event(
                    account_id=account_id,
                    job_id=job_id,
                    actor_id=actor_id,
                    event="reauth_failed",
                    status=job.status,
                    request_id=request_id,
                )
                raise AuthenticationFailed("Re-authentication failed")

            now = _utc_now()
            _require_edge(JOB_STATUS_SNAPSHOT_READY, JOB_STATUS_EXTERNAL_CLEANUP)
            async with self._session_factory() as session:
                moved = await jobs_repo.compare_and_set(
                    session,
                    job_id,
                    expected_status=JOB_STATUS_SNAPSHOT_READY,
                    values={
                        "status": JOB_STATUS_EXTERNAL_CLEANUP,
                        "confirmed_at": now,
                        "confirmed_by_actor_id": actor_id,
                    },
                    now=now,
                )
                if not moved:
                    await session.rollback()
                    raise ConflictError("Deletion job was already confirmed or changed concurrently")
                await record_deletion_event(
                    session=session,
                    account_id=account_id,
                    job_id=job_id,
                    actor_id=actor_id,
                    event="deletion_confirmed",
                    status=JOB_STATUS_EXTERNAL_CLEANUP,
                    request_id=request_id,
                    occurred_at=now,
                )
                await session.commit()
                job = await self._require_job(session, job_id)

        increment_counter("account_deletion.jobs_confirmed_total")
        logger.info("deletion_confirmed job_id=%s account_id=%s actor_id=%s", job_id, account_id, actor_id)
        try:
            await self._dispatcher.dispatch(job_id, PHASE_EXTERNAL)
        except Exception as exc:  # noqa: BLE001 - stall recovery re-enqueues undispatched jobs
            increment_counter("account_deletion.dispatch_failures_total")
            logger.error("deletion_dispatch_failed job_id=%s phase=%s", job_id, PHASE_EXTERNAL, exc_info=exc)
        return job

    async def get_status(self, job_id: str) -> AccountDeletionJob:
        async with self._session_factory() as session:
            return await self._require_job(session, job_id)

    async def get_latest_job_for_account(self, account_id: str) -> AccountDeletionJob:
        async with self._session_factory() as session:
            job = await jobs_repo.get_latest_job_for_account(session, account_id)
        if job is None:
            raise NotFoundError(f"No deletion job for account {account_id}")
        return job

    async def sweep_abandoned_jobs(
        self,
        *,
        older_than: timedelta,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[str]:
        # Only pre-confirmation stages are swept; confirmed jobs always run to an outcome.
        resolved_now = now or _utc_now()
        cutoff = resolved_now - older_than
        async with self._session_factory() as session:
            candidates = await jobs_repo.list_idle_jobs(
                session,
                statuses=ABANDONABLE_STATUSES,
                updated_before=cutoff,
                limit=limit,
            )
        swept: list[str] = []
        for candidate in candidates:
            try:
                async with self._locks.hold(candidate.account_id):
                    async with self._session_factory() as session:
                        job = await jobs_repo.get_job(session, candidate.id)
                        if job is None or job.status not in ABANDONABLE_STATUSES:
                            continue
                        _require_edge(job.status, JOB_STATUS_FAILED, sweep=True)
                        moved = await jobs_repo.compare_and_set(
                            session,
                            job.id,
                            expected_status=job.status,
                            values={"status": JOB_STATUS_FAILED, "failure_reason": ABANDONED_REASON},
                            now=resolved_now,
                        )
                        if not moved:
                            await session.rollback()
                            continue
                        await record_deletion_event(
                            session=session,
                            account_id=job.account_id,
                            job_id=job.id,
                            event="job_abandoned",
                            status=JOB_STATUS_FAILED,
                            reason=ABANDONED_REASON,
                            details={"previous_status": job.status},
                            occurred_at=resolved_now,
                        )
                        await session.commit()
            except LockUnavailableError:
                logger.info("deletion_sweep_lock_busy job_id=%s", candidate.id)
                continue
            swept.append(candidate.id)
            increment_counter("account_deletion.jobs_abandoned_total")
        if swept:
            logger.info("deletion_sweep_completed swept=%s", len(swept))
        return swept

    async def redispatch_stalled_jobs(
        self,
        *,
        older_than: timedelta,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[str]:
        # Re-enqueue cleanup jobs whose dispatch may have been lost; phases are idempotent.
        cutoff = (now or _utc_now()) - older_than
        async with self._session_factory() as session:
            stalled = await jobs_repo.list_idle_jobs(
                session,
                statuses=CLEANUP_STATUSES,
                updated_before=cutoff,
                limit=limit,
            )
        redispatched: list[str] = []
        for job in stalled:
            phase = STATUS_PHASE[job.status]
            await self._dispatcher.dispatch(job.id, phase, reason="recovery")
            redispatched.append(job.id)
            increment_counter("account_deletion.phase_redispatch_total")
            logger.warning("deletion_phase_redispatched job_id=%s phase=%s", job.id, phase)
        return redispatched
