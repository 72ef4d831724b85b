from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any

from purgegate.core.config import get_settings
from purgegate.core.errors import SnapshotTokenError, SnapshotTokenExpired


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def issue_snapshot_token(
    job_id: str,
    *,
    secret: str | None = None,
    ttl_s: int | None = None,
    now: float | None = None,
) -> tuple[str, int]:
    # Sign job id and expiry so public links cannot be forged or extended.
    settings = get_settings()
    resolved_secret = secret or settings.deletion_snapshot_token_secret
    resolved_ttl = ttl_s if ttl_s is not None else settings.deletion_snapshot_token_ttl_s
    expires_at = int((now if now is not None else time.time()) + resolved_ttl)
    payload = {"job_id": job_id, "exp": expires_at}
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    encoded = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    return f"{encoded}.{_sign(raw, resolved_secret)}", expires_at


def verify_snapshot_token(
    token: str,
    *,
    job_id: str,
    secret: str | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    # Check signature before expiry so forged tokens never learn about expiry.
    resolved_secret = secret or get_settings().deletion_snapshot_token_secret
    try:
        encoded, signature = token.split(".", 1)
    except ValueError as exc:
        raise SnapshotTokenError("Invalid snapshot token format") from exc
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise SnapshotTokenError("Invalid snapshot token encoding") from exc
    if not hmac.compare_digest(_sign(raw, resolved_secret), signature):
        raise SnapshotTokenError("Invalid snapshot token signature")
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise SnapshotTokenError("Invalid snapshot token payload") from exc
    if not isinstance(payload, dict) or payload.get("job_id") != job_id:
        raise SnapshotTokenError("Snapshot token does not match this job")
    expires_at = payload.get("exp")
    if not isinstance(expires_at, int):
        raise SnapshotTokenError("Invalid snapshot token payload")
    current = now if now is not None else time.time()
    if current >= expires_at:
        raise SnapshotTokenExpired("Snapshot link has expired")
    return payload
