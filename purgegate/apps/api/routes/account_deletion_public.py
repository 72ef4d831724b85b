from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import FileResponse

from purgegate.apps.api.deps import get_deletion_runtime
from purgegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from purgegate.apps.api.response import SuccessEnvelope, success_response
from purgegate.apps.api.routes.account_deletion import serve_snapshot
from purgegate.services.deletion.projection import DeletionStatusView, project_job
from purgegate.services.deletion.runtime import DeletionRuntime
from purgegate.services.deletion.tokens import verify_snapshot_token


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/public/account-deletions",
    tags=["account-deletion-public"],
    responses=DEFAULT_ERROR_RESPONSES,
)


@router.get(
    "/{job_id}/status",
    response_model=SuccessEnvelope[DeletionStatusView],
)
async def public_deletion_status(
    job_id: str,
    request: Request,
    token: str = Query(min_length=1),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> dict:
    verify_snapshot_token(token, job_id=job_id)
    job = await runtime.state_machine.get_status(job_id)
    return success_response(request=request, data=project_job(job))


@router.get("/{job_id}/download", response_class=FileResponse)
async def public_snapshot_download(
    job_id: str,
    request: Request,
    token: str = Query(min_length=1),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> FileResponse:
    verify_snapshot_token(token, job_id=job_id)
    job = await runtime.state_machine.get_status(job_id)
    logger.info("public_snapshot_download job_id=%s", job_id)
    return await serve_snapshot(runtime, job, request)
