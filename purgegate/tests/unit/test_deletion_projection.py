from __future__ import annotations

from datetime import datetime, timezone

import pytest

from purgegate.domain.models import AccountDeletionJob
from purgegate.services.deletion.projection import (
    DeletionStatusView,
    poll_until_terminal,
    project_job,
    summarize_jobs,
)


def _job(status: str, **fields) -> AccountDeletionJob:
    return AccountDeletionJob(
        id=fields.pop("id", f"job-{status}"),
        account_id=fields.pop("account_id", "acct-1"),
        requested_by_actor_id="actor-1",
        status=status,
        data_handling_preference="download_snapshot",
        snapshot_download_count=fields.pop("snapshot_download_count", 0),
        **fields,
    )


@pytest.mark.parametrize(
    ("status", "fields", "gates", "step"),
    [
        ("snapshot", {}, ["snapshot_ready", "snapshot_downloaded", "snapshot_acknowledged"], "generate_snapshot"),
        ("snapshot_ready", {}, ["snapshot_downloaded", "snapshot_acknowledged"], "download_snapshot"),
        (
            "snapshot_ready",
            {"snapshot_downloaded_at": datetime(2026, 1, 1, tzinfo=timezone.utc)},
            ["snapshot_acknowledged"],
            "acknowledge_snapshot",
        ),
        (
            "snapshot_ready",
            {
                "snapshot_downloaded_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
                "snapshot_acknowledged_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
            },
            [],
            "confirm_deletion",
        ),
        ("external_cleanup", {}, [], "wait_for_cleanup"),
        ("local_cleanup", {}, [], "wait_for_cleanup"),
        ("failed", {"failure_reason": "abandoned"}, [], "start_new_request"),
        ("completed", {}, [], None),
    ],
)
def test_projection_reports_gates_and_next_step(status: str, fields: dict, gates: list[str], step: str | None) -> None:
    view = project_job(_job(status, **fields), poll_interval_s=7)
    assert view.unmet_gates == gates
    assert view.next_step == step


def test_projection_stops_poll_hint_when_terminal() -> None:
    active = project_job(_job("external_cleanup"), poll_interval_s=7)
    failed = project_job(_job("failed", failure_reason="github:1 HTTP 503"), poll_interval_s=7)
    assert active.is_terminal is False
    assert active.poll_after_s == 7
    assert failed.is_terminal is True
    assert failed.poll_after_s is None
    assert failed.failure_reason == "github:1 HTTP 503"


def test_summarize_jobs_aggregates_without_special_cases() -> None:
    jobs = [
        _job("snapshot", id="j1"),
        _job("external_cleanup", id="j2"),
        _job("failed", id="j3", failure_reason="abandoned"),
        _job("failed", id="j4", failure_reason="abandoned"),
        _job("completed", id="j5"),
    ]
    summary = summarize_jobs(jobs)
    assert summary["total"] == 5
    assert summary["active"] == 2
    assert summary["by_status"]["failed"] == 2
    assert summary["by_status"]["pending"] == 0
    assert summary["top_failure_reasons"] == [{"reason": "abandoned", "count": 2}]
    assert summarize_jobs([_job("completed")])["total"] == 1


@pytest.mark.asyncio
async def test_poll_until_terminal_stops_on_terminal_status() -> None:
    statuses = iter(["external_cleanup", "local_cleanup", "completed", "completed"])
    fetches: list[str] = []

    async def _fetch() -> DeletionStatusView:
        status = next(statuses)
        fetches.append(status)
        return project_job(_job(status), poll_interval_s=60)

    view = await poll_until_terminal(_fetch, interval_s=0.0, timeout_s=5)

    assert view.status == "completed"
    assert fetches == ["external_cleanup", "local_cleanup", "completed"]


@pytest.mark.asyncio
async def test_poll_until_terminal_times_out() -> None:
    async def _fetch() -> DeletionStatusView:
        return project_job(_job("external_cleanup"), poll_interval_s=1)

    with pytest.raises(TimeoutError):
        await poll_until_terminal(_fetch, interval_s=0.01, timeout_s=0.05)
