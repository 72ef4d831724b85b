from __future__ import annotations

import json
import zipfile
from pathlib import Path

import httpx
import pytest
from sqlalchemy import func, select

from purgegate.domain.models import (
    CAPABILITY_FORCE_DELETE,
    Account,
    ActorCapability,
    ExternalIntegration,
    WebhookSubscription,
)
from purgegate.persistence.db import SessionLocal
from purgegate.services.deletion.cleanup import DefaultCleanupOrchestrator
from purgegate.services.deletion.snapshot import ZipSnapshotCoordinator, snapshot_path
from purgegate.tests.utils.seed import add_integration, add_webhook, create_account, create_actor


async def _integration_statuses(account_id: str) -> dict[str, str]:
    async with SessionLocal() as session:
        rows = (
            await session.execute(select(ExternalIntegration).where(ExternalIntegration.account_id == account_id))
        ).scalars().all()
    return {row.provider: row.status for row in rows}


@pytest.mark.asyncio
async def test_external_phase_revokes_each_integration() -> None:
    owner_id = await create_actor()
    account_id = await create_account(owner_actor_id=owner_id)
    await add_integration(account_id, provider="github", revoke_url="https://gh.example.test/revoke")
    await add_integration(account_id, provider="slack", revoke_url="https://slack.example.test/revoke")
    await add_integration(account_id, provider="manual", revoke_url=None)
    seen: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        # A link the provider no longer knows about counts as severed.
        if request.url.host == "slack.example.test":
            return httpx.Response(404)
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        orchestrator = DefaultCleanupOrchestrator(SessionLocal, http_client=client)
        result = await orchestrator.run_external_phase(account_id)

    assert result.ok is True
    assert result.details == {"revoked": 3, "failed": 0}
    assert sorted(item["provider"] for item in seen) == ["github", "slack"]
    assert set((await _integration_statuses(account_id)).values()) == {"revoked"}


@pytest.mark.asyncio
async def test_external_phase_reports_failures_and_resumes() -> None:
    owner_id = await create_actor()
    account_id = await create_account(owner_actor_id=owner_id)
    await add_integration(account_id, provider="github", revoke_url="https://gh.example.test/revoke")
    await add_integration(account_id, provider="jira", revoke_url="https://jira.example.test/revoke")
    jira_up = {"value": False}
    calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        if request.url.host == "jira.example.test" and not jira_up["value"]:
            return httpx.Response(503)
        return httpx.Response(200, json={"revoked": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        orchestrator = DefaultCleanupOrchestrator(SessionLocal, http_client=client)
        first = await orchestrator.run_external_phase(account_id)
        jira_up["value"] = True
        second = await orchestrator.run_external_phase(account_id)

    assert first.ok is False
    assert first.transient is True
    assert "jira" in (first.error or "")
    assert first.details == {"revoked": 1, "failed": 1}
    # The retry only touches the integration that is still active.
    assert second.ok is True
    assert second.details == {"revoked": 1, "failed": 0}
    assert calls.count("gh.example.test") == 1


@pytest.mark.asyncio
async def test_external_phase_client_errors_are_not_transient() -> None:
    owner_id = await create_actor()
    account_id = await create_account(owner_actor_id=owner_id)
    await add_integration(account_id, provider="github")

    transport = httpx.MockTransport(lambda request: httpx.Response(401))
    async with httpx.AsyncClient(transport=transport) as client:
        result = await DefaultCleanupOrchestrator(SessionLocal, http_client=client).run_external_phase(account_id)

    assert result.ok is False
    assert result.transient is False


@pytest.mark.asyncio
async def test_local_phase_purges_account_rows() -> None:
    owner_id = await create_actor()
    account_id = await create_account(owner_actor_id=owner_id)
    other_account = await create_account(owner_actor_id=owner_id)
    await create_actor(capabilities=[(CAPABILITY_FORCE_DELETE, account_id), (CAPABILITY_FORCE_DELETE, None)])
    await add_integration(account_id)
    await add_webhook(account_id)
    await add_webhook(other_account)

    result = await DefaultCleanupOrchestrator(SessionLocal).run_local_phase(account_id)

    assert result.ok is True
    assert result.details == {
        "webhooks_deleted": 1,
        "integrations_deleted": 1,
        "capabilities_deleted": 1,
        "accounts_deleted": 1,
    }
    async with SessionLocal() as session:
        assert await session.get(Account, account_id) is None
        assert await session.get(Account, other_account) is not None
        remaining_hooks = await session.scalar(select(func.count()).select_from(WebhookSubscription))
        global_grants = await session.scalar(
            select(func.count()).select_from(ActorCapability).where(ActorCapability.account_id.is_(None))
        )
    assert remaining_hooks == 1
    assert global_grants == 1


@pytest.mark.asyncio
async def test_zip_snapshot_exports_account_records(tmp_path: Path) -> None:
    owner_id = await create_actor()
    account_id = await create_account(owner_actor_id=owner_id)
    await add_integration(account_id, provider="github")
    await add_webhook(account_id)
    coordinator = ZipSnapshotCoordinator(SessionLocal, base_dir=str(tmp_path))

    result = await coordinator.generate(account_id, "job-1", "download_snapshot")

    assert result.artifact_ready is True
    expected = snapshot_path("job-1", account_id=account_id, base_dir=str(tmp_path))
    assert result.location == str(expected)
    assert result.size_bytes == expected.stat().st_size
    with zipfile.ZipFile(expected) as archive:
        names = set(archive.namelist())
        summary = json.loads(archive.read("SUMMARY.json"))
        integrations = json.loads(archive.read("integrations.json"))
    assert names == {"SUMMARY.json", "account.json", "integrations.json", "webhooks.json", "README.txt"}
    assert summary["counts"] == {"integrations": 1, "webhooks": 1}
    assert summary["data_handling_preference"] == "download_snapshot"
    # Revoke endpoints are operational detail and stay out of the export.
    assert "revoke_url" not in integrations[0]


@pytest.mark.asyncio
async def test_zip_snapshot_reports_missing_account(tmp_path: Path) -> None:
    coordinator = ZipSnapshotCoordinator(SessionLocal, base_dir=str(tmp_path))
    result = await coordinator.generate("acct-gone", "job-1", "delete_all")
    assert result.artifact_ready is False
    assert result.error == "Account no longer exists"
