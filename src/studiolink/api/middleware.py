"""Error envelope for every API response that is not a success.

Failures are rendered as
``{"error": {"code": "...", "message": "..."}}``.

Status code mapping:
- ``StudioError`` subclasses → their own ``status_code`` and ``code``
- ``RequestValidationError`` / ``ValueError`` → 400 Bad Request
- anything else → 500 ``INTERNAL_ERROR`` with a fixed message
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from studiolink.api.models import ErrorDetail, ErrorResponse
from studiolink.errors import StudioError

logger = logging.getLogger(__name__)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _handle_studio_error(
    request: Request,
    exc: StudioError,
) -> JSONResponse:
    """Map a domain error to its HTTP status."""
    if exc.status_code >= 500:
        logger.warning(
            "%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message
        )
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.code, exc.message)


async def _handle_request_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 400 for malformed query strings and bodies."""
    fields: set[str] = set()
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        if location:
            fields.add(".".join(location))
    message = "Invalid request"
    if fields:
        message = f"Invalid request: {', '.join(sorted(fields))}"
    logger.info("Validation error on %s %s: %s", request.method, request.url.path, message)
    return error_response(400, "VALIDATION_ERROR", message)


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    logger.info("Rejected value on %s %s: %s", request.method, request.url.path, exc)
    return error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Turns any exception that escaped the handlers into the 500 envelope.

    Tracebacks are logged; clients only see ``INTERNAL_ERROR``.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled error serving %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Install the domain, validation and catch-all handlers on *app*."""
    app.add_exception_handler(StudioError, _handle_studio_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        RequestValidationError, _handle_request_validation_error  # type: ignore[arg-type]
    )
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
