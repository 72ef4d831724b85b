from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from purgegate.domain.models import AccountDeletionLog
from purgegate.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_deletion_event(
    *,
    session: AsyncSession | None = None,
    account_id: str,
    event: str,
    job_id: str | None = None,
    actor_id: str | None = None,
    status: str | None = None,
    reason: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    occurred_at: datetime | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Append to the deletion audit trail without letting log failures break the workflow.
    row = AccountDeletionLog(
        job_id=job_id,
        account_id=account_id,
        actor_id=actor_id,
        event=event,
        status=status,
        reason=reason,
        details_json=sanitize_metadata(details or {}),
        request_id=request_id,
        created_at=occurred_at or datetime.now(timezone.utc),
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(row)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                level = logger.warning if best_effort else logger.error
                level(
                    "deletion_log_write_failed event=%s account_id=%s job_id=%s",
                    event,
                    account_id,
                    job_id,
                    exc_info=exc,
                )
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(row)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        level = logger.warning if best_effort else logger.error
        level(
            "deletion_log_write_failed event=%s account_id=%s job_id=%s",
            event,
            account_id,
            job_id,
            exc_info=exc,
        )


async def list_deletion_logs(
    session: AsyncSession,
    *,
    account_id: str | None = None,
    job_id: str | None = None,
    event: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
) -> list[AccountDeletionLog]:
    # Newest first; filters combine with AND.
    stmt = select(AccountDeletionLog)
    if account_id:
        stmt = stmt.where(AccountDeletionLog.account_id == account_id)
    if job_id:
        stmt = stmt.where(AccountDeletionLog.job_id == job_id)
    if event:
        stmt = stmt.where(AccountDeletionLog.event == event)
    if start is not None:
        stmt = stmt.where(AccountDeletionLog.created_at >= start)
    if end is not None:
        stmt = stmt.where(AccountDeletionLog.created_at <= end)
    result = await session.execute(
        stmt.order_by(AccountDeletionLog.created_at.desc(), AccountDeletionLog.id.desc()).limit(limit)
    )
    return list(result.scalars().all())
