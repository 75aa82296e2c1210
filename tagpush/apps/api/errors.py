from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tagpush.core.errors import QueueUnavailableError, ValidationError


logger = logging.getLogger(__name__)


def error_body(message: str) -> dict[str, str]:
    # Every error response carries a single client-safe message.
    return {"error": message}


def _describe_validation_error(error: dict[str, Any]) -> str:
    # Field validators already raise client-facing messages; other errors get their location.
    ctx = error.get("ctx") or {}
    if error.get("type") == "value_error" and ctx.get("error") is not None:
        return str(ctx["error"])
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    message = str(error.get("msg") or "Invalid request")
    return f"{location}: {message}" if location else message


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(content=error_body(str(exc)), status_code=400)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = _describe_validation_error(errors[0]) if errors else "Invalid request"
    return JSONResponse(content=error_body(message), status_code=400)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(content=error_body(detail), status_code=exc.status_code, headers=exc.headers)


async def queue_unavailable_handler(request: Request, exc: QueueUnavailableError) -> JSONResponse:
    logger.error("enqueue failed for %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(content=error_body("Push queue unavailable"), status_code=503)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; the full error goes to the log only.
    logger.exception("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(content=error_body("Internal server error"), status_code=500)
