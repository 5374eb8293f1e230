"""RFC 7807 problem documents for the HTTP surface.

Every error leaves the API as ``application/problem+json``::

    {"type": "about:blank", "title": "Conflict", "status": 409,
     "detail": "A sync is already running for credential 'id:7'",
     "instance": "/api/sync"}

Engine exceptions map to status codes in ``_STATUS_BY_ERROR``. Anything
unexpected is logged with its traceback and reported as a bare 500.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..errors import (
    CategoryUpdateError,
    ConcurrentSessionError,
    CredentialValidationError,
    FinanceSyncError,
    PatternQueryError,
    SourceError,
)
from ..logging_setup import get_logger

_logger = get_logger("finance_sync.web")

PROBLEM_MEDIA_TYPE = "application/problem+json"

_STATUS_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    502: "Bad Gateway",
}

# Checked in order; subclasses before their bases.
_STATUS_BY_ERROR: tuple[tuple[type[FinanceSyncError], int], ...] = (
    (CredentialValidationError, 422),
    (ConcurrentSessionError, 409),
    (PatternQueryError, 400),
    (CategoryUpdateError, 400),
    (SourceError, 502),
)


class NotFoundError(Exception):
    def __init__(self, detail: str = "Resource not found") -> None:
        super().__init__(detail)
        self.detail = detail


def problem(
    status: int,
    detail: str,
    *,
    instance: str = "",
    title: str | None = None,
    extra: dict[str, Any] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {
        "type": "about:blank",
        "title": title or _STATUS_TITLES.get(status, "Error"),
        "status": status,
        "detail": detail,
    }
    if instance:
        body["instance"] = instance
    if extra:
        body.update(extra)
    return JSONResponse(status_code=status, content=body, media_type=PROBLEM_MEDIA_TYPE)


def status_for(exc: FinanceSyncError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 400


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FinanceSyncError)
    async def finance_error_handler(request: Request, exc: FinanceSyncError) -> JSONResponse:
        status = status_for(exc)
        extra: dict[str, Any] = {}
        if isinstance(exc, CredentialValidationError) and exc.missing_fields:
            extra["missingFields"] = list(exc.missing_fields)
        if isinstance(exc, SourceError) and exc.hint:
            extra["hint"] = exc.hint
        _logger.info("http:rejected path=%s status=%d error=%s", request.url.path, status, exc)
        return problem(status, str(exc), instance=request.url.path, extra=extra)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return problem(404, exc.detail, instance=request.url.path)

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        detail = "; ".join(f"{'.'.join(e['loc'])}: {e['msg']}" for e in errors) or "Invalid request"
        return problem(422, detail, instance=request.url.path, extra={"errors": errors})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return problem(exc.status_code, detail, instance=request.url.path)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        _logger.error("http:unhandled path=%s", request.url.path, exc_info=exc)
        return problem(500, "An unexpected error occurred", instance=request.url.path)


__all__ = ["NotFoundError", "PROBLEM_MEDIA_TYPE", "problem", "register_error_handlers", "status_for"]
