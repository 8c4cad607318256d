"""
Uniform JSON error responder.

Every failure leaving the API looks like
`{"success": false, "error": CODE, "message": ..., "details"?: {...}}`.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from deckforge.errors import DeckforgeError, RateLimitExceeded

_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "AUTHENTICATION_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
}


def error_body(error: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": error, "message": message}
    if details:
        body["details"] = details
    return body


async def deckforge_error_handler(request: Request, exc: DeckforgeError) -> JSONResponse:
    body = {"success": False, **exc.to_dict()}
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceeded):
        body["retryAfter"] = exc.retry_after_seconds
        headers["Retry-After"] = str(exc.retry_after_seconds)
    elif exc.http_status >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.http_status} {exc.error_code}: {exc}")
    return JSONResponse(status_code=exc.http_status, content=body, headers=headers or None)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body("VALIDATION_ERROR", "Request validation failed", {"errors": errors}),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    settings = getattr(request.app.state, "settings", None) or get_settings()
    if settings.is_production():
        message = "Internal server error"
    else:
        message = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=error_body("INTERNAL_ERROR", message))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DeckforgeError, deckforge_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
