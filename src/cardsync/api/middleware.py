"""API error handling: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``CalendarNotConfiguredError`` -> 503 Service Unavailable
- ``CalendarApiError`` (remote, transport, token) -> 502 Bad Gateway
- ``ValueError`` -> 400 Bad Request
- Any other ``Exception`` -> 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from cardsync.api.models import ErrorDetail, ErrorResponse
from cardsync.calendar.client import (
    CalendarApiError,
    CalendarNotConfiguredError,
    RemoteApiError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)


async def _handle_not_configured(
    request: Request,
    exc: CalendarNotConfiguredError,
) -> JSONResponse:
    """Return 503 when Google sync is disabled or credentials are missing."""
    logger.info("Google Calendar not configured: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="GOOGLE_NOT_CONFIGURED",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=503, content=body.model_dump())


async def _handle_calendar_error(
    request: Request,
    exc: CalendarApiError,
) -> JSONResponse:
    """Return 502 when Google Calendar (or the token endpoint) fails."""
    logger.warning("Calendar API error on %s %s", request.method, request.url.path, exc_info=exc)
    details = None
    if isinstance(exc, RemoteApiError):
        details = {"status": exc.status_code, "method": exc.method, "path": exc.path}
    body = ErrorResponse(
        error=ErrorDetail(
            code="CALENDAR_API_ERROR",
            message=sanitize_error_message(exc),
            details=details,
        )
    )
    return JSONResponse(status_code=502, content=body.model_dump())


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Handlers are looked up by exception MRO, so the not-configured handler
    wins over the generic calendar handler.
    """
    app.add_exception_handler(CalendarNotConfiguredError, _handle_not_configured)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarApiError, _handle_calendar_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
