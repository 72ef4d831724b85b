from __future__ import annotations

import asyncio
import time

import pytest

from purgegate.core.errors import SnapshotTokenError, SnapshotTokenExpired
from purgegate.persistence.db import SessionLocal
from purgegate.services.auth.api_keys import generate_api_key, hash_api_key, parse_bearer_token
from purgegate.services.deletion import reauth
from purgegate.services.deletion.reauth import (
    DatabaseCredentialStore,
    ReAuthVerifier,
    check_secret,
    get_password_context,
    hash_secret,
)
from purgegate.services.deletion.tokens import issue_snapshot_token, verify_snapshot_token
from purgegate.services.telemetry import counters_snapshot
from purgegate.tests.utils.seed import create_actor


def test_hash_secret_uses_configured_passlib_scheme() -> None:
    encoded = hash_secret("hunter2")
    assert encoded.startswith("$pbkdf2-sha256$1000$")
    assert get_password_context().identify(encoded) == "pbkdf2_sha256"
    assert check_secret("hunter2", encoded) is True
    assert check_secret("hunter3", encoded) is False
    assert check_secret("hunter2", "not-a-hash") is False
    # Fresh salt per hash.
    assert hash_secret("hunter2") != encoded


@pytest.mark.asyncio
async def test_database_store_checks_the_actor_credential() -> None:
    active_id = await create_actor(secret="s3cret")
    inactive_id = await create_actor(secret="s3cret", is_active=False)
    passwordless_id = await create_actor(secret=None)
    store = DatabaseCredentialStore(SessionLocal)

    assert await store.verify(active_id, "s3cret") is True
    assert await store.verify(active_id, "S3cret") is False
    assert await store.verify(inactive_id, "s3cret") is False
    assert await store.verify(passwordless_id, "s3cret") is False
    assert await store.verify("actor-unknown", "s3cret") is False


@pytest.mark.asyncio
async def test_database_store_hashes_off_the_event_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    actor_id = await create_actor(secret="s3cret")
    store = DatabaseCredentialStore(SessionLocal)

    def _slow_check(secret: str, encoded: str) -> bool:
        time.sleep(0.3)
        return False

    monkeypatch.setattr(reauth, "check_secret", _slow_check)
    gaps: list[float] = []
    done = asyncio.Event()

    async def _ticker() -> None:
        last = time.monotonic()
        while not done.is_set():
            await asyncio.sleep(0.005)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    ticker = asyncio.create_task(_ticker())
    assert await store.verify(actor_id, "wrong") is False
    done.set()
    await ticker

    assert len(gaps) > 10
    assert max(gaps) < 0.15


@pytest.mark.asyncio
async def test_reauth_verifier_counts_failures_and_skips_store_for_empty_secret() -> None:
    calls: list[str] = []

    class _Store:
        async def verify(self, actor_id: str, secret: str) -> bool:
            calls.append(actor_id)
            return secret == "ok"

    verifier = ReAuthVerifier(_Store())
    assert await verifier.verify("actor-1", "ok") is True
    assert await verifier.verify("actor-1", "nope") is False
    assert await verifier.verify("actor-1", None) is False
    assert await verifier.verify("actor-1", "") is False
    assert calls == ["actor-1", "actor-1"]
    assert counters_snapshot()["account_deletion.reauth_failures_total"] == 3


def test_snapshot_token_verifies_for_its_job() -> None:
    token, expires_at = issue_snapshot_token("job-1", secret="k", ttl_s=60, now=1000.0)
    assert expires_at == 1060
    payload = verify_snapshot_token(token, job_id="job-1", secret="k", now=1059.0)
    assert payload == {"job_id": "job-1", "exp": 1060}


def test_snapshot_token_rejects_tampering_and_other_jobs() -> None:
    token, _expires_at = issue_snapshot_token("job-1", secret="k", ttl_s=60, now=1000.0)
    encoded, signature = token.split(".", 1)

    with pytest.raises(SnapshotTokenError):
        verify_snapshot_token(token, job_id="job-2", secret="k", now=1001.0)
    with pytest.raises(SnapshotTokenError):
        verify_snapshot_token(token, job_id="job-1", secret="other", now=1001.0)
    with pytest.raises(SnapshotTokenError):
        verify_snapshot_token(f"{encoded}.{'0' * len(signature)}", job_id="job-1", secret="k", now=1001.0)
    with pytest.raises(SnapshotTokenError):
        verify_snapshot_token("no-dot-here", job_id="job-1", secret="k", now=1001.0)


def test_snapshot_token_expiry_is_reported_after_signature_check() -> None:
    token, _expires_at = issue_snapshot_token("job-1", secret="k", ttl_s=60, now=1000.0)
    with pytest.raises(SnapshotTokenExpired):
        verify_snapshot_token(token, job_id="job-1", secret="k", now=1060.0)
    # A forged token is invalid even when it would also be expired.
    with pytest.raises(SnapshotTokenError) as exc_info:
        verify_snapshot_token(token, job_id="job-1", secret="other", now=5000.0)
    assert not isinstance(exc_info.value, SnapshotTokenExpired)


def test_api_key_generation_and_bearer_parsing() -> None:
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    assert raw_key.startswith(f"pgk_{key_id}_")
    assert raw_key.startswith(key_prefix)
    assert key_hash == hash_api_key(raw_key)
    assert parse_bearer_token(f"Bearer {raw_key}") == raw_key
    assert parse_bearer_token(f"bearer   {raw_key} ") == raw_key
    assert parse_bearer_token("Basic abc") is None
    assert parse_bearer_token("Bearer ") is None
    assert parse_bearer_token(None) is None
