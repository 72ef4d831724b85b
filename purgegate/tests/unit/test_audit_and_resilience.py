from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from purgegate.core.errors import CleanupFailed
from purgegate.persistence.db import SessionLocal
from purgegate.services.audit import list_deletion_logs, record_deletion_event, sanitize_metadata
from purgegate.services.resilience import RetryPolicy, retry_async
from purgegate.services.telemetry import counters_snapshot, record_timing, timing_stats


def test_audit_redacts_secrets_and_tokens() -> None:
    # Redact credential-like fields anywhere in deletion log details.
    payload = {
        "secret": "hunter2",
        "snapshot_token": "abc.def",
        "nested": {"Authorization": "Bearer pgk_x", "attempts": 2},
        "items": [{"password": "p"}, {"provider": "github"}],
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["secret"] == "[REDACTED]"
    assert sanitized["snapshot_token"] == "[REDACTED]"
    assert sanitized["nested"] == {"Authorization": "[REDACTED]", "attempts": 2}
    assert sanitized["items"] == [{"password": "[REDACTED]"}, {"provider": "github"}]
    assert sanitized["safe"] == "value"


@pytest.mark.asyncio
async def test_deletion_log_filters_by_event_and_window() -> None:
    base = datetime.now(timezone.utc) - timedelta(hours=3)
    await record_deletion_event(account_id="acct-1", job_id="job-1", event="deletion_requested", occurred_at=base)
    await record_deletion_event(
        account_id="acct-1",
        job_id="job-1",
        event="reauth_failed",
        details={"secret": "leaked?"},
        occurred_at=base + timedelta(hours=1),
    )
    await record_deletion_event(account_id="acct-2", job_id="job-2", event="deletion_requested", occurred_at=base)

    async with SessionLocal() as session:
        by_account = await list_deletion_logs(session, account_id="acct-1")
        by_event = await list_deletion_logs(session, event="deletion_requested")
        windowed = await list_deletion_logs(session, start=base + timedelta(minutes=30))

    assert [row.event for row in by_account] == ["reauth_failed", "deletion_requested"]
    assert by_account[0].details_json == {"secret": "[REDACTED]"}
    assert {row.account_id for row in by_event} == {"acct-1", "acct-2"}
    assert [row.event for row in windowed] == ["reauth_failed"]


@pytest.mark.asyncio
async def test_retry_async_retries_transient_cleanup_failures() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise CleanupFailed("provider timeout", transient=True)
        return "ok"

    result = await retry_async(flaky, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_stops_on_permanent_failure() -> None:
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise CleanupFailed("unauthorized", transient=False)

    with pytest.raises(CleanupFailed):
        await retry_async(broken, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_times_out_slow_calls() -> None:
    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(TimeoutError):
        await retry_async(slow, policy=RetryPolicy(timeout_ms=10, max_attempts=2, backoff_ms=1))


def test_timing_stats_group_by_name() -> None:
    record_timing("account_deletion.phase.external", latency_ms=10)
    record_timing("account_deletion.phase.external", latency_ms=30, success=False)
    stats = timing_stats(60)["account_deletion.phase.external"]
    assert stats["count"] == 2
    assert stats["failures"] == 1
    assert stats["max"] == 30
