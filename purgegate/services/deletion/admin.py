from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from purgegate.domain.models import ACTIVE_JOB_STATUSES, AccountDeletionLog, JOB_STATUS_FAILED
from purgegate.domain.state import STATUS_SEQUENCE
from purgegate.persistence.repos import accounts as accounts_repo
from purgegate.persistence.repos import deletion_jobs as jobs_repo
from purgegate.services.audit import list_deletion_logs
from purgegate.services.deletion.dispatch import get_queue_depth
from purgegate.services.deletion.projection import DeletionStatusView, project_job, summarize_jobs


MAX_JOB_LIST_LIMIT = 100
MAX_LOG_LIST_LIMIT = 500
MAX_ORPHAN_SAMPLE_LIMIT = 50


def clamp_limit(limit: int | None, *, default: int, maximum: int) -> int:
    # Out-of-range limits are clamped, not rejected.
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


async def list_job_views(
    session: AsyncSession,
    *,
    status: str | None = None,
    account_id: str | None = None,
    limit: int | None = None,
) -> list[DeletionStatusView]:
    jobs = await jobs_repo.list_jobs(
        session,
        statuses=[status] if status else None,
        account_id=account_id,
        limit=clamp_limit(limit, default=20, maximum=MAX_JOB_LIST_LIMIT),
    )
    return [project_job(job) for job in jobs]


async def job_stats(session: AsyncSession, *, recent_limit: int = MAX_JOB_LIST_LIMIT) -> dict[str, Any]:
    counts = await jobs_repo.count_by_status(session)
    by_status = {status: counts.get(status, 0) for status in (*STATUS_SEQUENCE, JOB_STATUS_FAILED)}
    recent = await jobs_repo.list_jobs(session, limit=recent_limit)
    return {
        "total": sum(counts.values()),
        "active": sum(counts.get(status, 0) for status in ACTIVE_JOB_STATUSES),
        "by_status": by_status,
        "recent": summarize_jobs(recent),
        "queue_depth": await get_queue_depth(),
    }


def log_to_payload(row: AccountDeletionLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "job_id": row.job_id,
        "account_id": row.account_id,
        "actor_id": row.actor_id,
        "event": row.event,
        "status": row.status,
        "reason": row.reason,
        "details": row.details_json or {},
        "request_id": row.request_id,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def list_log_entries(
    session: AsyncSession,
    *,
    account_id: str | None = None,
    job_id: str | None = None,
    event: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    rows = await list_deletion_logs(
        session,
        account_id=account_id,
        job_id=job_id,
        event=event,
        start=start,
        end=end,
        limit=clamp_limit(limit, default=100, maximum=MAX_LOG_LIST_LIMIT),
    )
    return [log_to_payload(row) for row in rows]


async def find_account_references(session: AsyncSession, account_id: str) -> list[dict[str, Any]]:
    # Non-zero counts after completion mean the local phase left rows behind.
    rows = await accounts_repo.count_account_references(session, account_id)
    payload = [
        {"table_name": table_name, "column_name": column_name, "row_count": row_count}
        for table_name, column_name, row_count in rows
    ]
    return sorted(payload, key=lambda item: item["row_count"], reverse=True)


async def list_reference_orphans(session: AsyncSession, *, sample_limit: int | None = None) -> list[dict[str, Any]]:
    rows = await accounts_repo.list_reference_orphans(
        session,
        sample_limit=clamp_limit(sample_limit, default=5, maximum=MAX_ORPHAN_SAMPLE_LIMIT),
    )
    return [
        {
            "table_name": table_name,
            "column_name": column_name,
            "orphan_count": orphan_count,
            "sample_ids": sample_ids,
        }
        for table_name, column_name, orphan_count, sample_ids in rows
    ]
