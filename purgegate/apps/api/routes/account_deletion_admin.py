from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from purgegate.apps.api.deps import Principal, get_db, get_deletion_runtime, require_deletion_admin
from purgegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from purgegate.apps.api.response import SuccessEnvelope, success_response
from purgegate.core.config import get_settings
from purgegate.services.deletion.admin import (
    find_account_references,
    job_stats,
    list_job_views,
    list_log_entries,
    list_reference_orphans,
)
from purgegate.services.deletion.projection import DeletionStatusView
from purgegate.services.deletion.runtime import DeletionRuntime


router = APIRouter(
    prefix="/admin/account-deletions",
    tags=["account-deletion-admin"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class DeletionJobListResponse(BaseModel):
    items: list[DeletionStatusView]


class DeletionLogListResponse(BaseModel):
    items: list[dict[str, Any]]


class AccountReferenceListResponse(BaseModel):
    account_id: str
    items: list[dict[str, Any]]


class ReferenceOrphanListResponse(BaseModel):
    items: list[dict[str, Any]]


class SweepRequest(BaseModel):
    # Defaults to the configured abandonment window.
    older_than_hours: int | None = Field(default=None, ge=1)
    limit: int = Field(default=100, ge=1, le=1000)


class SweepResponse(BaseModel):
    swept_job_ids: list[str]


@router.get("", response_model=SuccessEnvelope[DeletionJobListResponse])
async def list_deletion_jobs(
    request: Request,
    status: str | None = Query(default=None),
    account_id: str | None = Query(default=None),
    limit: int = Query(default=20),
    principal: Principal = Depends(require_deletion_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await list_job_views(db, status=status, account_id=account_id, limit=limit)
    return success_response(request=request, data=DeletionJobListResponse(items=items))


@router.get("/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def deletion_job_stats(
    request: Request,
    principal: Principal = Depends(require_deletion_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await job_stats(db))


@router.get("/logs", response_model=SuccessEnvelope[DeletionLogListResponse])
async def list_deletion_job_logs(
    request: Request,
    account_id: str | None = Query(default=None),
    job_id: str | None = Query(default=None),
    event: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=100),
    principal: Principal = Depends(require_deletion_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await list_log_entries(
        db,
        account_id=account_id,
        job_id=job_id,
        event=event,
        start=since,
        end=until,
        limit=limit,
    )
    return success_response(request=request, data=DeletionLogListResponse(items=items))


@router.get("/references", response_model=SuccessEnvelope[AccountReferenceListResponse])
async def list_account_references(
    request: Request,
    account_id: str = Query(min_length=1),
    principal: Principal = Depends(require_deletion_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Lets operators confirm a completed deletion left no account rows behind.
    items = await find_account_references(db, account_id)
    return success_response(
        request=request,
        data=AccountReferenceListResponse(account_id=account_id, items=items),
    )


@router.get("/orphans", response_model=SuccessEnvelope[ReferenceOrphanListResponse])
async def list_account_reference_orphans(
    request: Request,
    sample_limit: int = Query(default=5),
    principal: Principal = Depends(require_deletion_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await list_reference_orphans(db, sample_limit=sample_limit)
    return success_response(request=request, data=ReferenceOrphanListResponse(items=items))


@router.post("/sweep", response_model=SuccessEnvelope[SweepResponse])
async def sweep_abandoned_deletions(
    request: Request,
    payload: SweepRequest | None = None,
    principal: Principal = Depends(require_deletion_admin),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> dict:
    resolved = payload or SweepRequest()
    hours = resolved.older_than_hours or get_settings().deletion_abandoned_ttl_hours
    swept = await runtime.state_machine.sweep_abandoned_jobs(
        older_than=timedelta(hours=hours),
        limit=resolved.limit,
    )
    return success_response(request=request, data=SweepResponse(swept_job_ids=swept))
