from __future__ import annotations

import time
from typing import Any, Callable

import httpx


TERMINAL_STATUSES = {"completed", "failed"}


class DeletionApiError(Exception):
    """Error envelope returned by the PurgeGate API."""

    def __init__(self, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}

    @property
    def unmet_gates(self) -> list[str]:
        return list(self.details.get("unmet_gates") or [])


def _retry_after_seconds(headers: httpx.Headers) -> float | None:
    retry_after = headers.get("Retry-After")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            return None
    return None


class DeletionClient:
    """Synchronous client for the account deletion API.

    Retries 429/503 responses with backoff. Non-2xx responses raise
    DeletionApiError carrying the envelope's code and details.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "http://localhost:8000",
        *,
        max_retries: int = 2,
        timeout_s: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout_s,
            transport=transport,
        )
        self._max_retries = max_retries
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "DeletionClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        attempt = 0
        while True:
            response = self._client.request(method, path, **kwargs)
            if response.status_code not in {429, 503} or attempt >= self._max_retries:
                break
            retry_after = _retry_after_seconds(response.headers)
            if retry_after is None:
                retry_after = min(2.0, 0.25 * (2 ** attempt))
            self._sleep(retry_after)
            attempt += 1
        if response.is_success:
            return response
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        raise DeletionApiError(
            response.status_code,
            str(error.get("code") or "UNKNOWN_ERROR"),
            str(error.get("message") or response.reason_phrase),
            error.get("details"),
        )

    def _data(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        return self._send(method, path, **kwargs).json()["data"]

    def request_deletion(self, account_id: str, preference: str) -> dict[str, Any]:
        return self._data(
            "POST",
            f"/v1/accounts/{account_id}/deletion",
            json={"data_handling_preference": preference},
        )

    def get_latest_job(self, account_id: str) -> dict[str, Any]:
        return self._data("GET", f"/v1/accounts/{account_id}/deletion")

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self._data("GET", f"/v1/account-deletions/{job_id}")

    def generate_snapshot(self, job_id: str) -> dict[str, Any]:
        return self._data("POST", f"/v1/account-deletions/{job_id}/snapshot")

    def download_snapshot(self, job_id: str) -> bytes:
        return self._send("GET", f"/v1/account-deletions/{job_id}/snapshot/download").content

    def acknowledge_snapshot(self, job_id: str, consent: bool = True) -> dict[str, Any]:
        return self._data("POST", f"/v1/account-deletions/{job_id}/acknowledge", json={"consent": consent})

    def confirm_deletion(self, job_id: str, secret: str) -> dict[str, Any]:
        return self._data("POST", f"/v1/account-deletions/{job_id}/confirm", json={"secret": secret})

    def wait_for_completion(
        self,
        job_id: str,
        *,
        timeout_s: float = 600.0,
        interval_s: float | None = None,
    ) -> dict[str, Any]:
        # Poll until completed or failed, honoring the server's poll_after_s hint.
        deadline = time.monotonic() + timeout_s
        while True:
            job = self.get_job(job_id)
            if job.get("is_terminal") or job.get("status") in TERMINAL_STATUSES:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"Deletion job {job_id} still {job.get('status')} after {timeout_s}s")
            wait_s = interval_s if interval_s is not None else float(job.get("poll_after_s") or 1)
            self._sleep(max(0.0, min(wait_s, remaining)))
