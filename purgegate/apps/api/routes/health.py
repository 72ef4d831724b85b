from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from purgegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from purgegate.apps.api.response import SuccessEnvelope, success_response
from purgegate.core.config import get_settings
from purgegate.services.deletion.dispatch import get_worker_heartbeat

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    execution_mode: str
    worker_heartbeat_at: datetime | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Report liveness plus the last worker heartbeat; Redis outages degrade to null.
    settings = get_settings()
    payload = HealthResponse(
        status="ok",
        execution_mode=settings.deletion_execution_mode,
        worker_heartbeat_at=await get_worker_heartbeat(),
    )
    return success_response(request=request, data=payload)
