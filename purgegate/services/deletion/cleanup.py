from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Protocol

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from purgegate.core.config import get_settings
from purgegate.domain.models import (
    Account,
    ActorCapability,
    ExternalIntegration,
    WebhookSubscription,
)


logger = logging.getLogger(__name__)

INTEGRATION_STATUS_ACTIVE = "active"
INTEGRATION_STATUS_REVOKED = "revoked"


@dataclass(frozen=True)
class PhaseResult:
    ok: bool
    error: str | None = None
    transient: bool = True
    details: dict[str, Any] = field(default_factory=dict)


class CleanupOrchestrator(Protocol):
    async def run_external_phase(self, account_id: str) -> PhaseResult: ...

    async def run_local_phase(self, account_id: str) -> PhaseResult: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in {408, 429}


class DefaultCleanupOrchestrator:
    """Severs third-party integrations over HTTP, then purges local account rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_ms: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._http_client = http_client
        self._timeout_s = (timeout_ms or get_settings().integration_revoke_timeout_ms) / 1000.0

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            yield client

    async def _revoke(self, client: httpx.AsyncClient, row: ExternalIntegration) -> tuple[bool, bool, str | None]:
        # Returns (revoked, transient, error).
        if not row.revoke_url:
            return True, False, None
        try:
            response = await client.post(
                row.revoke_url,
                json={"provider": row.provider, "external_ref": row.external_ref},
            )
        except httpx.HTTPError as exc:
            return False, True, f"{row.provider}:{row.id} {type(exc).__name__}"
        # A missing remote link is already severed.
        if response.is_success or response.status_code == 404:
            return True, False, None
        return False, _is_transient_status(response.status_code), f"{row.provider}:{row.id} HTTP {response.status_code}"

    async def run_external_phase(self, account_id: str) -> PhaseResult:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(ExternalIntegration)
                    .where(
                        ExternalIntegration.account_id == account_id,
                        ExternalIntegration.status == INTEGRATION_STATUS_ACTIVE,
                    )
                    .order_by(ExternalIntegration.id)
                )
            ).scalars().all()

        revoked = 0
        errors: list[str] = []
        transient = True
        async with self._client() as client:
            for row in rows:
                ok, is_transient, error = await self._revoke(client, row)
                if not ok:
                    errors.append(error or f"{row.provider}:{row.id} revoke failed")
                    transient = transient and is_transient
                    continue
                # Mark each row as soon as it is severed so a retry resumes where this one stopped.
                async with self._session_factory() as session:
                    await session.execute(
                        update(ExternalIntegration)
                        .where(ExternalIntegration.id == row.id)
                        .values(status=INTEGRATION_STATUS_REVOKED, revoked_at=_utc_now())
                    )
                    await session.commit()
                revoked += 1
                logger.info(
                    "integration_revoked account_id=%s integration_id=%s provider=%s",
                    account_id,
                    row.id,
                    row.provider,
                )

        details = {"revoked": revoked, "failed": len(errors)}
        if errors:
            return PhaseResult(ok=False, error="; ".join(errors), transient=transient, details=details)
        return PhaseResult(ok=True, details=details)

    async def run_local_phase(self, account_id: str) -> PhaseResult:
        async with self._session_factory() as session:
            webhooks = await session.execute(
                delete(WebhookSubscription).where(WebhookSubscription.account_id == account_id)
            )
            integrations = await session.execute(
                delete(ExternalIntegration).where(ExternalIntegration.account_id == account_id)
            )
            capabilities = await session.execute(
                delete(ActorCapability).where(ActorCapability.account_id == account_id)
            )
            accounts = await session.execute(delete(Account).where(Account.id == account_id))
            await session.commit()
        details = {
            "webhooks_deleted": webhooks.rowcount or 0,
            "integrations_deleted": integrations.rowcount or 0,
            "capabilities_deleted": capabilities.rowcount or 0,
            "accounts_deleted": accounts.rowcount or 0,
        }
        logger.info("account_local_data_purged account_id=%s details=%s", account_id, details)
        return PhaseResult(ok=True, details=details)
