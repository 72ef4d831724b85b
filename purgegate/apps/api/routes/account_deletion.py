from __future__ import annotations

from pathlib import Path
from typing import Literal
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field, StrictBool

from purgegate.apps.api.deps import (
    Principal,
    get_authorized_job,
    get_current_principal,
    get_deletion_runtime,
)
from purgegate.apps.api.openapi import DELETION_ERROR_RESPONSES
from purgegate.apps.api.response import SuccessEnvelope, get_request_id, success_response
from purgegate.core.config import get_settings
from purgegate.core.errors import PermissionDenied, PreconditionFailed
from purgegate.domain.models import AccountDeletionJob
from purgegate.domain.state import GATE_SNAPSHOT_READY
from purgegate.services.deletion.projection import DeletionStatusView, project_job
from purgegate.services.deletion.runtime import DeletionRuntime
from purgegate.services.deletion.tokens import issue_snapshot_token


router = APIRouter(tags=["account-deletion"], responses=DELETION_ERROR_RESPONSES)


class DeletionRequest(BaseModel):
    data_handling_preference: Literal["download_snapshot", "delete_all"]


class AcknowledgeRequest(BaseModel):
    # Only a JSON true records consent; strings and numbers are rejected.
    consent: StrictBool | None = None


class ConfirmRequest(BaseModel):
    secret: str = Field(min_length=1, max_length=1024)


class SnapshotLinkResponse(BaseModel):
    job_id: str
    url: str
    expires_at: int


def snapshot_file(job: AccountDeletionJob) -> Path | None:
    if not job.snapshot_location:
        return None
    path = Path(job.snapshot_location)
    return path if path.is_file() else None


def snapshot_gone_error() -> HTTPException:
    return HTTPException(
        status_code=410,
        detail={"code": "SNAPSHOT_UNAVAILABLE", "message": "Snapshot archive is no longer available"},
    )


async def serve_snapshot(runtime: DeletionRuntime, job: AccountDeletionJob, request: Request) -> FileResponse:
    # Shared by the authenticated and signed-link download routes.
    path = snapshot_file(job)
    if path is None:
        if job.snapshot_ready_at is None:
            # Let the state machine report the unmet gate or terminal conflict.
            await runtime.state_machine.record_download(job.id, request_id=get_request_id(request))
        raise snapshot_gone_error()
    await runtime.state_machine.record_download(job.id, request_id=get_request_id(request))
    return FileResponse(
        path,
        media_type="application/zip",
        filename=f"account-snapshot-{job.id}.zip",
    )


@router.post(
    "/accounts/{account_id}/deletion",
    status_code=201,
    response_model=SuccessEnvelope[DeletionStatusView],
)
async def request_account_deletion(
    account_id: str,
    payload: DeletionRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> dict:
    job = await runtime.state_machine.request_deletion(
        account_id,
        principal.actor_id,
        payload.data_handling_preference,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=project_job(job))


@router.get(
    "/accounts/{account_id}/deletion",
    response_model=SuccessEnvelope[DeletionStatusView],
)
async def get_latest_account_deletion(
    account_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> dict:
    # Owners, delegates and past requesters may look up the most recent attempt.
    if not await runtime.permissions.can_view_account_jobs(principal.actor_id, account_id):
        raise PermissionDenied("Actor may not view deletion jobs for this account")
    job = await runtime.state_machine.get_latest_job_for_account(account_id)
    return success_response(request=request, data=project_job(job))


@router.get(
    "/account-deletions/{job_id}",
    response_model=SuccessEnvelope[DeletionStatusView],
)
async def get_account_deletion(
    request: Request,
    job: AccountDeletionJob = Depends(get_authorized_job),
) -> dict:
    return success_response(request=request, data=project_job(job))


@router.post(
    "/account-deletions/{job_id}/snapshot",
    response_model=SuccessEnvelope[DeletionStatusView],
)
async def generate_account_snapshot(
    request: Request,
    job: AccountDeletionJob = Depends(get_authorized_job),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> dict:
    updated = await runtime.state_machine.generate_snapshot(job.id, request_id=get_request_id(request))
    return success_response(request=request, data=project_job(updated))


@router.get("/account-deletions/{job_id}/snapshot/download", response_class=FileResponse)
async def download_account_snapshot(
    request: Request,
    job: AccountDeletionJob = Depends(get_authorized_job),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> FileResponse:
    return await serve_snapshot(runtime, job, request)


@router.get(
    "/account-deletions/{job_id}/snapshot/link",
    response_model=SuccessEnvelope[SnapshotLinkResponse],
)
async def get_account_snapshot_link(
    request: Request,
    job: AccountDeletionJob = Depends(get_authorized_job),
) -> dict:
    # Signed links let the holder fetch the archive from a browser without an API key.
    if job.snapshot_ready_at is None:
        raise PreconditionFailed([GATE_SNAPSHOT_READY])
    token, expires_at = issue_snapshot_token(job.id)
    base_url = get_settings().public_base_url.rstrip("/")
    url = f"{base_url}/v1/public/account-deletions/{job.id}/download?token={quote(token)}"
    return success_response(
        request=request,
        data=SnapshotLinkResponse(job_id=job.id, url=url, expires_at=expires_at),
    )


@router.post(
    "/account-deletions/{job_id}/acknowledge",
    response_model=SuccessEnvelope[DeletionStatusView],
)
async def acknowledge_account_snapshot(
    payload: AcknowledgeRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    job: AccountDeletionJob = Depends(get_authorized_job),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> dict:
    updated = await runtime.state_machine.acknowledge_snapshot(
        job.id,
        payload.consent,
        actor_id=principal.actor_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=project_job(updated))


@router.post(
    "/account-deletions/{job_id}/confirm",
    status_code=202,
    response_model=SuccessEnvelope[DeletionStatusView],
)
async def confirm_account_deletion(
    payload: ConfirmRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    job: AccountDeletionJob = Depends(get_authorized_job),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> JSONResponse:
    # Cleanup continues in the background; clients poll the job for the outcome.
    updated = await runtime.state_machine.confirm_deletion(
        job.id,
        principal.actor_id,
        payload.secret,
        request_id=get_request_id(request),
    )
    return JSONResponse(
        status_code=202,
        content=success_response(request=request, data=project_job(updated)),
    )
