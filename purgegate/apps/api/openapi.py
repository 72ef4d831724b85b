from __future__ import annotations

from typing import Any

from purgegate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _error_response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _error_response(
        "Forbidden",
        _error_example(
            code="ACCOUNT_DELETION_UNAUTHORIZED",
            message="Actor may not act on this deletion job",
        ),
    ),
    404: _error_response(
        "Not found",
        _error_example(code="ACCOUNT_DELETION_NOT_FOUND", message="Deletion job not found"),
    ),
    422: _error_response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _error_response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

DELETION_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    401: _error_response(
        "Re-authentication failed",
        _error_example(code="ACCOUNT_DELETION_REAUTH_FAILED", message="Re-authentication failed"),
    ),
    409: _error_response(
        "Conflict",
        _error_example(
            code="ACCOUNT_DELETION_CONFLICT",
            message="Deletion job was already confirmed or changed concurrently",
        ),
    ),
    412: _error_response(
        "Deletion gates unmet",
        _error_example(
            code="ACCOUNT_DELETION_PRECONDITION_FAILED",
            message="Unmet deletion gates: snapshot_downloaded, snapshot_acknowledged",
            details={"unmet_gates": ["snapshot_downloaded", "snapshot_acknowledged"]},
        ),
    ),
    502: _error_response(
        "Snapshot failed",
        _error_example(code="ACCOUNT_DELETION_SNAPSHOT_FAILED", message="Snapshot generation failed"),
    ),
}
