from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from purgegate.core.config import get_settings
from purgegate.domain.models import AccountDeletionJob, Actor, ActorApiKey
from purgegate.persistence.db import get_session
from purgegate.services.auth.api_keys import hash_api_key, parse_bearer_token
from purgegate.services.deletion.runtime import DeletionRuntime, get_runtime


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_deletion_runtime() -> DeletionRuntime:
    # Dependency seam so tests can swap collaborators via dependency_overrides.
    return get_runtime()


class Principal(BaseModel):
    # The authenticated actor; deletion permissions are resolved per account.
    actor_id: str
    api_key_id: str
    auth_method: str = "api_key"


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _principal_from_dev_headers(request: Request) -> Principal:
    # Allow actor headers only when explicitly enabled for local dev.
    actor_id = request.headers.get("X-Actor-Id")
    if not actor_id:
        raise _auth_error("X-Actor-Id header is required in dev bypass mode")
    return Principal(actor_id=actor_id, api_key_id="dev-bypass", auth_method="dev_bypass")


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    raw_header = request.headers.get(settings.auth_api_key_header)
    bearer_token = parse_bearer_token(raw_header)
    if raw_header and bearer_token is None:
        raise _auth_error("Missing or invalid bearer token")

    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        if not settings.auth_enabled:
            raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise _auth_error("Missing API key")

    now = datetime.now(timezone.utc)
    try:
        row = (
            await db.execute(
                select(ActorApiKey, Actor)
                .join(Actor, ActorApiKey.actor_id == Actor.id)
                .where(
                    ActorApiKey.key_hash == hash_api_key(bearer_token),
                    ActorApiKey.revoked_at.is_(None),
                    or_(ActorApiKey.expires_at.is_(None), ActorApiKey.expires_at > now),
                )
            )
        ).first()
    except SQLAlchemyError as exc:
        logger.error("auth_lookup_failed path=%s", request.url.path, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    if row is None:
        logger.info("auth_rejected reason=unknown_or_revoked_key path=%s", request.url.path)
        raise _auth_error("Invalid API key")
    api_key, actor = row
    if not actor.is_active:
        logger.info("auth_rejected reason=inactive_actor actor_id=%s", actor.id)
        raise _auth_error("API key is revoked or inactive")
    return Principal(actor_id=actor.id, api_key_id=api_key.id)


async def require_deletion_admin(
    principal: Principal = Depends(get_current_principal),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> Principal:
    # Operator views need the admin capability regardless of account ownership.
    if not await runtime.permissions.has_admin_capability(principal.actor_id):
        raise _forbidden_error("Account deletion admin capability required")
    return principal


async def get_authorized_job(
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    runtime: DeletionRuntime = Depends(get_deletion_runtime),
) -> AccountDeletionJob:
    # Resolve the job and ensure the caller is its requester or a delegate.
    job = await runtime.state_machine.get_status(job_id)
    await runtime.permissions.authorize_job_access(principal.actor_id, job)
    return job
