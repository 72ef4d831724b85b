from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from purgegate.domain.models import (
    ACTIVE_JOB_STATUSES,
    JOB_STATUS_PENDING,
    AccountDeletionJob,
)


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    account_id: str,
    requested_by_actor_id: str,
    data_handling_preference: str,
    now: datetime,
) -> AccountDeletionJob:
    # Insert in pending; callers advance through the transition table before commit.
    job = AccountDeletionJob(
        id=job_id,
        account_id=account_id,
        requested_by_actor_id=requested_by_actor_id,
        status=JOB_STATUS_PENDING,
        data_handling_preference=data_handling_preference,
        snapshot_download_count=0,
        external_state_json={},
        metadata_json={},
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()
    return job


async def get_job(session: AsyncSession, job_id: str) -> AccountDeletionJob | None:
    # Always reload from the database so callers never act on a stale identity-map copy.
    result = await session.execute(
        select(AccountDeletionJob)
        .where(AccountDeletionJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_active_job_for_account(session: AsyncSession, account_id: str) -> AccountDeletionJob | None:
    result = await session.execute(
        select(AccountDeletionJob)
        .where(
            AccountDeletionJob.account_id == account_id,
            AccountDeletionJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(AccountDeletionJob.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_latest_job_for_account(session: AsyncSession, account_id: str) -> AccountDeletionJob | None:
    result = await session.execute(
        select(AccountDeletionJob)
        .where(AccountDeletionJob.account_id == account_id)
        .order_by(AccountDeletionJob.created_at.desc(), AccountDeletionJob.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def has_job_requested_by(session: AsyncSession, *, account_id: str, actor_id: str) -> bool:
    result = await session.execute(
        select(AccountDeletionJob.id)
        .where(
            AccountDeletionJob.account_id == account_id,
            AccountDeletionJob.requested_by_actor_id == actor_id,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def compare_and_set(
    session: AsyncSession,
    job_id: str,
    *,
    expected_status: str,
    values: dict[str, Any],
    now: datetime,
) -> bool:
    # Conditional update keyed on the observed status; a concurrent writer makes this a no-op.
    result = await session.execute(
        update(AccountDeletionJob)
        .where(
            AccountDeletionJob.id == job_id,
            AccountDeletionJob.status == expected_status,
        )
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def list_jobs(
    session: AsyncSession,
    *,
    statuses: Iterable[str] | None = None,
    account_id: str | None = None,
    limit: int = 20,
) -> list[AccountDeletionJob]:
    stmt = select(AccountDeletionJob)
    status_list = list(statuses or [])
    if status_list:
        stmt = stmt.where(AccountDeletionJob.status.in_(status_list))
    if account_id:
        stmt = stmt.where(AccountDeletionJob.account_id == account_id)
    result = await session.execute(
        stmt.order_by(AccountDeletionJob.created_at.desc(), AccountDeletionJob.id).limit(limit)
    )
    return list(result.scalars().all())


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(AccountDeletionJob.status, func.count()).group_by(AccountDeletionJob.status)
    )
    return {status: int(count) for status, count in result.all()}


async def list_idle_jobs(
    session: AsyncSession,
    *,
    statuses: Iterable[str],
    updated_before: datetime,
    limit: int,
) -> list[AccountDeletionJob]:
    # Oldest first so sweeps and stall recovery drain in a stable order.
    result = await session.execute(
        select(AccountDeletionJob)
        .where(
            AccountDeletionJob.status.in_(list(statuses)),
            AccountDeletionJob.updated_at < updated_before,
        )
        .order_by(AccountDeletionJob.updated_at, AccountDeletionJob.id)
        .limit(limit)
    )
    return list(result.scalars().all())
