from __future__ import annotations

import asyncio
import json
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from purgegate.core.config import get_settings
from purgegate.domain.models import Account, ExternalIntegration, WebhookSubscription


logger = logging.getLogger(__name__)

_README = (
    "This archive contains the data held for your account at the time the\n"
    "deletion was requested. Keep it somewhere safe: once deletion is\n"
    "confirmed the account cannot be restored.\n"
)


@dataclass(frozen=True)
class SnapshotResult:
    artifact_ready: bool
    location: str | None = None
    size_bytes: int | None = None
    error: str | None = None


class SnapshotCoordinator(Protocol):
    async def generate(self, account_id: str, job_id: str, preference: str) -> SnapshotResult: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def snapshot_path(job_id: str, *, account_id: str, base_dir: str | None = None) -> Path:
    root = Path(base_dir or get_settings().deletion_snapshot_dir)
    return root / account_id / f"{job_id}.zip"


def _write_archive(path: Path, documents: dict[str, Any]) -> int:
    # Write to a temp name and rename so readers never see a partial archive.
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".zip.tmp")
    with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, payload in documents.items():
            if isinstance(payload, str):
                archive.writestr(name, payload)
            else:
                archive.writestr(name, json.dumps(payload, indent=2, sort_keys=True, default=str))
    tmp_path.replace(path)
    return path.stat().st_size


class ZipSnapshotCoordinator:
    """Exports the account's local records into a zip archive on disk."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        base_dir: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._base_dir = base_dir

    async def _collect(self, account_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            account = await session.get(Account, account_id)
            if account is None:
                return None
            integrations = (
                await session.execute(
                    select(ExternalIntegration).where(ExternalIntegration.account_id == account_id)
                )
            ).scalars().all()
            webhooks = (
                await session.execute(
                    select(WebhookSubscription).where(WebhookSubscription.account_id == account_id)
                )
            ).scalars().all()
        return {
            "account": {
                "id": account.id,
                "owner_actor_id": account.owner_actor_id,
                "display_name": account.display_name,
                "created_at": _iso(account.created_at),
            },
            "integrations": [
                {
                    "id": row.id,
                    "provider": row.provider,
                    "external_ref": row.external_ref,
                    "status": row.status,
                    "created_at": _iso(row.created_at),
                }
                for row in integrations
            ],
            "webhooks": [
                {
                    "id": row.id,
                    "target_url": row.target_url,
                    "event_types": row.event_types_json or [],
                    "created_at": _iso(row.created_at),
                }
                for row in webhooks
            ],
        }

    async def generate(self, account_id: str, job_id: str, preference: str) -> SnapshotResult:
        try:
            data = await self._collect(account_id)
        except Exception as exc:  # noqa: BLE001 - report as a snapshot failure on the job
            logger.exception("snapshot_collect_failed account_id=%s job_id=%s", account_id, job_id)
            return SnapshotResult(artifact_ready=False, error=f"Snapshot export failed: {type(exc).__name__}")
        if data is None:
            return SnapshotResult(artifact_ready=False, error="Account no longer exists")

        path = snapshot_path(job_id, account_id=account_id, base_dir=self._base_dir)
        documents: dict[str, Any] = {
            "SUMMARY.json": {
                "account_id": account_id,
                "job_id": job_id,
                "data_handling_preference": preference,
                "generated_at": _utc_now().isoformat(),
                "counts": {
                    "integrations": len(data["integrations"]),
                    "webhooks": len(data["webhooks"]),
                },
            },
            "account.json": data["account"],
            "integrations.json": data["integrations"],
            "webhooks.json": data["webhooks"],
            "README.txt": _README,
        }
        try:
            size_bytes = await asyncio.to_thread(_write_archive, path, documents)
        except OSError as exc:
            logger.exception("snapshot_write_failed account_id=%s job_id=%s", account_id, job_id)
            return SnapshotResult(artifact_ready=False, error=f"Snapshot archive could not be written: {exc.strerror or exc}")
        logger.info(
            "snapshot_generated account_id=%s job_id=%s size_bytes=%s",
            account_id,
            job_id,
            size_bytes,
        )
        return SnapshotResult(artifact_ready=True, location=str(path), size_bytes=size_bytes)
