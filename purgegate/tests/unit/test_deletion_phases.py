from __future__ import annotations

from datetime import timedelta

import pytest

from purgegate.domain.models import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_EXTERNAL_CLEANUP,
    JOB_STATUS_FAILED,
    JOB_STATUS_SNAPSHOT,
    JOB_STATUS_SNAPSHOT_READY,
)
from purgegate.persistence.db import SessionLocal
from purgegate.services.audit import list_deletion_logs
from purgegate.services.deletion.cleanup import PhaseResult
from purgegate.services.deletion.dispatch import InlinePhaseDispatcher
from purgegate.services.deletion.phases import (
    OUTCOME_COMPLETED,
    OUTCOME_MISSING,
    OUTCOME_NOOP,
    OUTCOME_SKIPPED,
)
from purgegate.services.telemetry import counters_snapshot
from purgegate.tests.utils.fakes import FakeCleanupOrchestrator, RecordingDispatcher
from purgegate.tests.utils.runtime import age_job, build_test_runtime
from purgegate.tests.utils.seed import DEFAULT_SECRET, create_account, create_actor
from purgegate.workers.deletion_worker import run_deletion_phase, run_scheduler_pass


async def _confirmed_job(runtime) -> tuple[str, str]:
    # Walk a fresh job through every gate and confirm it.
    owner_id = await create_actor()
    account_id = await create_account(owner_actor_id=owner_id)
    machine = runtime.state_machine
    job = await machine.request_deletion(account_id, owner_id, "download_snapshot")
    await machine.generate_snapshot(job.id)
    await machine.record_download(job.id)
    await machine.acknowledge_snapshot(job.id, True, actor_id=owner_id)
    await machine.confirm_deletion(job.id, owner_id, DEFAULT_SECRET)
    return job.id, account_id


@pytest.mark.asyncio
async def test_happy_path_runs_both_phases_to_completion() -> None:
    orchestrator = FakeCleanupOrchestrator()
    dispatcher = InlinePhaseDispatcher()
    runtime = build_test_runtime(dispatcher=dispatcher, orchestrator=orchestrator)

    job_id, account_id = await _confirmed_job(runtime)
    await dispatcher.drain()

    job = await runtime.state_machine.get_status(job_id)
    assert job.status == JOB_STATUS_COMPLETED
    assert job.failure_reason is None
    assert job.snapshot_ready_at is not None
    assert job.snapshot_downloaded_at is not None
    assert job.snapshot_acknowledged_at is not None
    assert job.snapshot_location is not None
    assert job.confirmed_at is not None
    assert orchestrator.external_calls == [account_id]
    assert orchestrator.local_calls == [account_id]
    assert job.external_state_json["external"]["outcome"] == "succeeded"
    assert job.external_state_json["local"]["attempts"] == 1
    assert job.metadata_json["local"] == {"accounts_deleted": 1}

    async with SessionLocal() as session:
        rows = await list_deletion_logs(session, job_id=job_id)
    events = [row.event for row in reversed(rows)]
    assert events == [
        "deletion_requested",
        "snapshot_ready",
        "snapshot_downloaded",
        "snapshot_acknowledged",
        "deletion_confirmed",
        "external_cleanup_completed",
        "local_cleanup_completed",
    ]
    assert counters_snapshot()["account_deletion.jobs_completed_total"] == 1


@pytest.mark.asyncio
async def test_external_phase_exhaustion_fails_job_and_skips_local() -> None:
    orchestrator = FakeCleanupOrchestrator(
        external=[PhaseResult(ok=False, error="github:1 HTTP 503", transient=True)]
    )
    dispatcher = InlinePhaseDispatcher()
    runtime = build_test_runtime(dispatcher=dispatcher, orchestrator=orchestrator)

    job_id, _account_id = await _confirmed_job(runtime)
    await dispatcher.drain()

    job = await runtime.state_machine.get_status(job_id)
    assert job.status == JOB_STATUS_FAILED
    assert job.failure_reason == "github:1 HTTP 503"
    assert len(orchestrator.external_calls) == 2
    assert orchestrator.local_calls == []
    assert job.external_state_json["external"]["outcome"] == "failed"
    assert job.external_state_json["external"]["attempts"] == 2
    assert counters_snapshot()["account_deletion.jobs_failed_total.external"] == 1


@pytest.mark.asyncio
async def test_non_transient_failure_is_not_retried() -> None:
    orchestrator = FakeCleanupOrchestrator(
        external=[PhaseResult(ok=False, error="slack:2 HTTP 401", transient=False)]
    )
    dispatcher = InlinePhaseDispatcher()
    runtime = build_test_runtime(dispatcher=dispatcher, orchestrator=orchestrator)

    job_id, _account_id = await _confirmed_job(runtime)
    await dispatcher.drain()

    job = await runtime.state_machine.get_status(job_id)
    assert job.status == JOB_STATUS_FAILED
    assert len(orchestrator.external_calls) == 1


@pytest.mark.asyncio
async def test_transient_failure_then_success_records_attempts() -> None:
    orchestrator = FakeCleanupOrchestrator(
        external=[
            PhaseResult(ok=False, error="timeout", transient=True),
            PhaseResult(ok=True, details={"revoked": 2, "failed": 0}),
        ]
    )
    dispatcher = InlinePhaseDispatcher()
    runtime = build_test_runtime(dispatcher=dispatcher, orchestrator=orchestrator)

    job_id, _account_id = await _confirmed_job(runtime)
    await dispatcher.drain()

    job = await runtime.state_machine.get_status(job_id)
    assert job.status == JOB_STATUS_COMPLETED
    assert job.external_state_json["external"]["attempts"] == 2
    assert job.metadata_json["external"] == {"revoked": 2, "failed": 0}
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_local_phase_failure_fails_job() -> None:
    orchestrator = FakeCleanupOrchestrator(
        local=[PhaseResult(ok=False, error="local purge failed", transient=False)]
    )
    dispatcher = InlinePhaseDispatcher()
    runtime = build_test_runtime(dispatcher=dispatcher, orchestrator=orchestrator)

    job_id, _account_id = await _confirmed_job(runtime)
    await dispatcher.drain()

    job = await runtime.state_machine.get_status(job_id)
    assert job.status == JOB_STATUS_FAILED
    assert job.failure_reason == "local purge failed"
    assert job.external_state_json["external"]["outcome"] == "succeeded"


@pytest.mark.asyncio
async def test_phase_redelivery_is_noop_and_early_phase_is_skipped() -> None:
    orchestrator = FakeCleanupOrchestrator()
    dispatcher = RecordingDispatcher()
    runtime = build_test_runtime(dispatcher=dispatcher, orchestrator=orchestrator)
    job_id, _account_id = await _confirmed_job(runtime)

    # Local cannot run before external has finished.
    assert await runtime.phase_runner.run(job_id, "local") == OUTCOME_SKIPPED
    assert orchestrator.local_calls == []

    assert await runtime.phase_runner.run(job_id, "external") == OUTCOME_COMPLETED
    assert dispatcher.dispatched[-1] == (job_id, "local", "transition")
    assert await runtime.phase_runner.run(job_id, "external") == OUTCOME_NOOP
    assert len(orchestrator.external_calls) == 1

    assert await runtime.phase_runner.run(job_id, "local") == OUTCOME_COMPLETED
    assert await runtime.phase_runner.run(job_id, "local") == OUTCOME_NOOP
    assert len(orchestrator.local_calls) == 1
    assert await runtime.phase_runner.run("missing-job", "external") == OUTCOME_MISSING

    with pytest.raises(ValueError):
        await runtime.phase_runner.run(job_id, "snapshot")


@pytest.mark.asyncio
async def test_worker_task_validates_payload_and_runs_phase() -> None:
    orchestrator = FakeCleanupOrchestrator()
    runtime = build_test_runtime(dispatcher=RecordingDispatcher(), orchestrator=orchestrator)
    job_id, _account_id = await _confirmed_job(runtime)

    outcome = await run_deletion_phase(
        {"runtime": runtime, "job_try": 1},
        {"job_id": job_id, "phase": "external", "reason": "transition"},
    )

    assert outcome == OUTCOME_COMPLETED
    assert len(orchestrator.external_calls) == 1


@pytest.mark.asyncio
async def test_sweep_fails_only_abandoned_pre_confirmation_jobs() -> None:
    runtime = build_test_runtime(dispatcher=RecordingDispatcher())
    machine = runtime.state_machine

    stale_owner = await create_actor()
    stale_account = await create_account(owner_actor_id=stale_owner)
    stale = await machine.request_deletion(stale_account, stale_owner, "download_snapshot")
    await machine.generate_snapshot(stale.id)
    await age_job(stale.id, hours=100)

    fresh_owner = await create_actor()
    fresh_account = await create_account(owner_actor_id=fresh_owner)
    fresh = await machine.request_deletion(fresh_account, fresh_owner, "delete_all")

    confirmed_id, _confirmed_account = await _confirmed_job(runtime)
    await age_job(confirmed_id, hours=100)

    swept = await machine.sweep_abandoned_jobs(older_than=timedelta(hours=72))

    assert swept == [stale.id]
    abandoned = await machine.get_status(stale.id)
    assert abandoned.status == JOB_STATUS_FAILED
    assert abandoned.failure_reason == "abandoned"
    assert (await machine.get_status(fresh.id)).status == JOB_STATUS_SNAPSHOT
    assert (await machine.get_status(confirmed_id)).status == JOB_STATUS_EXTERNAL_CLEANUP

    async with SessionLocal() as session:
        rows = await list_deletion_logs(session, job_id=stale.id, event="job_abandoned")
    assert rows[0].details_json == {"previous_status": JOB_STATUS_SNAPSHOT_READY}

    # The slot is free again once the abandoned job is failed.
    renewed = await machine.request_deletion(stale_account, stale_owner, "download_snapshot")
    assert renewed.id != stale.id


@pytest.mark.asyncio
async def test_scheduler_pass_redispatches_stalled_cleanup_jobs() -> None:
    dispatcher = RecordingDispatcher()
    runtime = build_test_runtime(dispatcher=dispatcher)
    job_id, _account_id = await _confirmed_job(runtime)
    await age_job(job_id, hours=2)

    result = await run_scheduler_pass(runtime)

    assert result == {"redispatched": 1, "swept": 0}
    assert dispatcher.dispatched[-1] == (job_id, "external", "recovery")
    assert counters_snapshot()["account_deletion.phase_redispatch_total"] == 1
