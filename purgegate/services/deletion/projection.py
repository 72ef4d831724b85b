from __future__ import annotations

import asyncio
import time
from collections import Counter
from datetime import datetime
from typing import Awaitable, Callable, Iterable

from pydantic import BaseModel

from purgegate.core.config import get_settings
from purgegate.domain.models import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_EXTERNAL_CLEANUP,
    JOB_STATUS_FAILED,
    JOB_STATUS_LOCAL_CLEANUP,
    JOB_STATUS_PENDING,
    JOB_STATUS_SNAPSHOT,
    JOB_STATUS_SNAPSHOT_READY,
    AccountDeletionJob,
)
from purgegate.domain.state import (
    GATE_SNAPSHOT_ACKNOWLEDGED,
    GATE_SNAPSHOT_DOWNLOADED,
    GATE_SNAPSHOT_READY,
    STATUS_SEQUENCE,
    is_terminal,
)


NEXT_STEP_GENERATE_SNAPSHOT = "generate_snapshot"
NEXT_STEP_DOWNLOAD_SNAPSHOT = "download_snapshot"
NEXT_STEP_ACKNOWLEDGE_SNAPSHOT = "acknowledge_snapshot"
NEXT_STEP_CONFIRM_DELETION = "confirm_deletion"
NEXT_STEP_WAIT_FOR_CLEANUP = "wait_for_cleanup"
NEXT_STEP_START_NEW_REQUEST = "start_new_request"


class DeletionStatusView(BaseModel):
    job_id: str
    account_id: str
    requested_by_actor_id: str
    status: str
    data_handling_preference: str
    snapshot_ready_at: datetime | None = None
    snapshot_downloaded_at: datetime | None = None
    snapshot_download_count: int = 0
    snapshot_acknowledged_at: datetime | None = None
    snapshot_size_bytes: int | None = None
    confirmed_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_terminal: bool
    unmet_gates: list[str]
    next_step: str | None = None
    poll_after_s: int | None = None


def unmet_gates(job: AccountDeletionJob) -> list[str]:
    # Gates toward the confirm step; empty once confirmed or terminal.
    if job.status in (JOB_STATUS_PENDING, JOB_STATUS_SNAPSHOT):
        gates = [GATE_SNAPSHOT_READY]
    elif job.status == JOB_STATUS_SNAPSHOT_READY:
        gates = []
    else:
        return []
    if job.snapshot_downloaded_at is None:
        gates.append(GATE_SNAPSHOT_DOWNLOADED)
    if job.snapshot_acknowledged_at is None:
        gates.append(GATE_SNAPSHOT_ACKNOWLEDGED)
    return gates


def next_step(job: AccountDeletionJob) -> str | None:
    if job.status in (JOB_STATUS_PENDING, JOB_STATUS_SNAPSHOT):
        return NEXT_STEP_GENERATE_SNAPSHOT
    if job.status == JOB_STATUS_SNAPSHOT_READY:
        if job.snapshot_downloaded_at is None:
            return NEXT_STEP_DOWNLOAD_SNAPSHOT
        if job.snapshot_acknowledged_at is None:
            return NEXT_STEP_ACKNOWLEDGE_SNAPSHOT
        return NEXT_STEP_CONFIRM_DELETION
    if job.status in (JOB_STATUS_EXTERNAL_CLEANUP, JOB_STATUS_LOCAL_CLEANUP):
        return NEXT_STEP_WAIT_FOR_CLEANUP
    if job.status == JOB_STATUS_FAILED:
        return NEXT_STEP_START_NEW_REQUEST
    return None


def project_job(job: AccountDeletionJob, *, poll_interval_s: int | None = None) -> DeletionStatusView:
    terminal = is_terminal(job.status)
    interval = poll_interval_s if poll_interval_s is not None else get_settings().deletion_poll_interval_s
    return DeletionStatusView(
        job_id=job.id,
        account_id=job.account_id,
        requested_by_actor_id=job.requested_by_actor_id,
        status=job.status,
        data_handling_preference=job.data_handling_preference,
        snapshot_ready_at=job.snapshot_ready_at,
        snapshot_downloaded_at=job.snapshot_downloaded_at,
        snapshot_download_count=job.snapshot_download_count or 0,
        snapshot_acknowledged_at=job.snapshot_acknowledged_at,
        snapshot_size_bytes=job.snapshot_size_bytes,
        confirmed_at=job.confirmed_at,
        failure_reason=job.failure_reason if job.status == JOB_STATUS_FAILED else None,
        created_at=job.created_at,
        updated_at=job.updated_at,
        is_terminal=terminal,
        unmet_gates=unmet_gates(job),
        next_step=next_step(job),
        poll_after_s=None if terminal else interval,
    )


def summarize_jobs(jobs: Iterable[AccountDeletionJob]) -> dict[str, object]:
    # Plain aggregation over whatever the caller passes in.
    counts: Counter[str] = Counter()
    failure_reasons: Counter[str] = Counter()
    total = 0
    for job in jobs:
        total += 1
        counts[job.status] += 1
        if job.status == JOB_STATUS_FAILED and job.failure_reason:
            failure_reasons[job.failure_reason] += 1
    by_status = {status: counts.get(status, 0) for status in (*STATUS_SEQUENCE, JOB_STATUS_FAILED)}
    return {
        "total": total,
        "by_status": by_status,
        "active": total - counts.get(JOB_STATUS_COMPLETED, 0) - counts.get(JOB_STATUS_FAILED, 0),
        "top_failure_reasons": [
            {"reason": reason, "count": count} for reason, count in failure_reasons.most_common(5)
        ],
    }


async def poll_until_terminal(
    fetch: Callable[[], Awaitable[DeletionStatusView]],
    *,
    interval_s: float | None = None,
    timeout_s: float = 600.0,
) -> DeletionStatusView:
    # Honor the server's poll hint when present; stop on completed or failed.
    deadline = time.monotonic() + timeout_s
    while True:
        view = await fetch()
        if view.is_terminal:
            return view
        if time.monotonic() >= deadline:
            raise TimeoutError(f"Deletion job {view.job_id} still {view.status} after {timeout_s}s")
        wait_s = interval_s if interval_s is not None else float(view.poll_after_s or 1)
        await asyncio.sleep(max(0.0, min(wait_s, deadline - time.monotonic())))
