from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from purgegate.core.config import get_settings
from purgegate.core.errors import PermissionDenied
from purgegate.domain.models import (
    CAPABILITY_DELETION_ADMIN,
    CAPABILITY_FORCE_DELETE,
    AccountDeletionJob,
)
from purgegate.persistence.repos import accounts as accounts_repo
from purgegate.persistence.repos import deletion_jobs as jobs_repo


logger = logging.getLogger(__name__)


def _protected_owner_ids() -> set[str]:
    # Parse comma-delimited ids once per call so settings reloads take effect in tests.
    raw = get_settings().deletion_protected_owner_ids or ""
    return {item.strip() for item in raw.split(",") if item.strip()}


class PermissionChecker:
    """Answers authorization questions against the accounts and capability tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def has_force_delete_capability(self, actor_id: str, account_id: str) -> bool:
        async with self._session_factory() as session:
            return await accounts_repo.has_capability(
                session,
                actor_id=actor_id,
                capability=CAPABILITY_FORCE_DELETE,
                account_id=account_id,
            )

    async def has_admin_capability(self, actor_id: str) -> bool:
        async with self._session_factory() as session:
            return await accounts_repo.has_capability(
                session,
                actor_id=actor_id,
                capability=CAPABILITY_DELETION_ADMIN,
            )

    async def is_owner(self, actor_id: str, account_id: str) -> bool:
        # A purged account has no owner left to match.
        async with self._session_factory() as session:
            account = await accounts_repo.get_account(session, account_id)
        return account is not None and account.owner_actor_id == actor_id

    async def is_protected(self, account_id: str) -> bool:
        # Protection comes from the table or from configured owner ids.
        async with self._session_factory() as session:
            if await accounts_repo.get_protected_record(session, account_id) is not None:
                return True
            account = await accounts_repo.get_account(session, account_id)
            if account is None:
                return False
            if account.owner_actor_id in _protected_owner_ids():
                await accounts_repo.ensure_protected_record(
                    session,
                    account_id=account_id,
                    owner_actor_id=account.owner_actor_id,
                    reason="owner is on the protected owner list",
                )
                await session.commit()
                return True
        return False

    async def can_request(self, actor_id: str, account_id: str) -> bool:
        if await self.is_owner(actor_id, account_id):
            return True
        return await self.has_force_delete_capability(actor_id, account_id)

    async def can_view_account_jobs(self, actor_id: str, account_id: str) -> bool:
        # Requesters keep read access to their jobs after the account row is gone.
        if await self.can_request(actor_id, account_id):
            return True
        async with self._session_factory() as session:
            return await jobs_repo.has_job_requested_by(session, account_id=account_id, actor_id=actor_id)

    async def authorize_job_access(self, actor_id: str, job: AccountDeletionJob) -> None:
        # Only the requester or a delegate for the same account may drive a job.
        if job.requested_by_actor_id == actor_id:
            return
        if await self.has_force_delete_capability(actor_id, job.account_id):
            return
        logger.warning(
            "deletion_job_access_denied actor_id=%s job_id=%s account_id=%s",
            actor_id,
            job.id,
            job.account_id,
        )
        raise PermissionDenied("Actor may not act on this deletion job")
