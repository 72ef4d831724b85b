from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from purgegate.apps.api.response import error_response
from purgegate.core.errors import (
    AccountProtectedError,
    AuthenticationFailed,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    PreconditionFailed,
    PurgeGateError,
    SnapshotFailed,
    SnapshotTokenError,
    SnapshotTokenExpired,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    410: "GONE",
    412: "PRECONDITION_FAILED",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}

# Ordered most specific first; the first isinstance match wins.
_DOMAIN_ERROR_MAP: tuple[tuple[type[PurgeGateError], int, str], ...] = (
    (AccountProtectedError, 403, "ACCOUNT_DELETION_PROTECTED"),
    (PermissionDenied, 403, "ACCOUNT_DELETION_UNAUTHORIZED"),
    (NotFoundError, 404, "ACCOUNT_DELETION_NOT_FOUND"),
    (ConflictError, 409, "ACCOUNT_DELETION_CONFLICT"),
    (PreconditionFailed, 412, "ACCOUNT_DELETION_PRECONDITION_FAILED"),
    (AuthenticationFailed, 401, "ACCOUNT_DELETION_REAUTH_FAILED"),
    (SnapshotFailed, 502, "ACCOUNT_DELETION_SNAPSHOT_FAILED"),
    (SnapshotTokenExpired, 410, "SNAPSHOT_LINK_EXPIRED"),
    (SnapshotTokenError, 403, "SNAPSHOT_LINK_INVALID"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_to_http(exc: PurgeGateError) -> HTTPException:
    # Translate workflow errors into stable HTTP codes for clients and the SDK.
    for error_type, status_code, code in _DOMAIN_ERROR_MAP:
        if isinstance(exc, error_type):
            detail: dict[str, Any] = {"code": code, "message": str(exc)}
            if isinstance(exc, PreconditionFailed):
                detail["unmet_gates"] = list(exc.unmet_gates)
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(
        status_code=500,
        detail={"code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Ensure Starlette-raised exceptions (404 routing, 405) share the envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def purgegate_error_handler(request: Request, exc: PurgeGateError) -> JSONResponse:
    http_exc = domain_error_to_http(exc)
    if http_exc.status_code >= 500:
        logger.error("deletion_request_failed path=%s error=%s", request.url.path, type(exc).__name__)
    return await http_exception_handler(request, http_exc)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Surface validation errors with structured details for UI/SDK parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
