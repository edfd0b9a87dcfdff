from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bookflow.config.load_config import ConfigError
from bookflow.flow.errors import CollaboratorError, FlowError, StoreError


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


# Most specific first; the first matching class wins.
_FLOW_ERROR_STATUS: tuple[tuple[type[FlowError], int, str], ...] = (
    (StoreError, 503, "storage_unavailable"),
    (CollaboratorError, 502, "upstream_failed"),
    (FlowError, 500, "flow_error"),
)


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    body: dict[str, Any] = {"code": code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=int(status_code), content={"error": body})


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def flow_error_handler(req: Request, exc: FlowError) -> JSONResponse:
    status_code, code = 500, "flow_error"
    for cls, status, name in _FLOW_ERROR_STATUS:
        if isinstance(exc, cls):
            status_code, code = status, name
            break
    logger.warning("flow_error path=%s type=%s error=%s", req.url.path, type(exc).__name__, exc)
    return error_response(status_code=status_code, code=code, message=str(exc), details={"type": type(exc).__name__})


async def sqlite_error_handler(req: Request, exc: sqlite3.Error) -> JSONResponse:
    # Typically "database is locked" while the worker holds a write transaction.
    logger.warning("sqlite_error path=%s error=%s", req.url.path, exc)
    return error_response(
        status_code=503,
        code="storage_unavailable",
        message="Database is temporarily unavailable, retry later.",
        details={"type": type(exc).__name__},
    )


async def config_error_handler(req: Request, exc: ConfigError) -> JSONResponse:
    logger.error("config_error path=%s error=%s", req.url.path, exc)
    return error_response(status_code=500, code="config_error", message=str(exc))


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error type=%s", type(exc).__name__)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
