from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from purgegate.apps.api.errors import (
    http_exception_handler,
    purgegate_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from purgegate.apps.api.response import API_VERSION
from purgegate.apps.api.routes.account_deletion import router as account_deletion_router
from purgegate.apps.api.routes.account_deletion_admin import router as account_deletion_admin_router
from purgegate.apps.api.routes.account_deletion_public import router as account_deletion_public_router
from purgegate.apps.api.routes.health import router as health_router
from purgegate.core.config import get_settings
from purgegate.core.errors import PurgeGateError
from purgegate.core.logging import configure_logging
from purgegate.services.telemetry import record_timing


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="PurgeGate API",
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_timing(
            "http.request",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(PurgeGateError)
    async def _purgegate_error_handler(request: Request, exc: PurgeGateError):
        return await purgegate_error_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(account_deletion_router, prefix=f"/{API_VERSION}")
    # Signed-link access for holders who download from a browser.
    app.include_router(account_deletion_public_router, prefix=f"/{API_VERSION}")
    # Operator views require the account_deletion_admin capability.
    app.include_router(account_deletion_admin_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into the schema; public and health paths stay open.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="PurgeGate API",
            version=API_VERSION,
            routes=app.routes,
        )
        schema["servers"] = [{"url": get_settings().public_base_url}]
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == "/v1/health" or path.startswith("/v1/public/"):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
