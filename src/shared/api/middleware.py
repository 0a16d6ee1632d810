"""
Shared API Middleware
======================

Request tracing and error mapping for the FastAPI application.

Middleware order in ``main`` matters: the correlation middleware is added
last so it runs first and the id is on ``request.state`` before the access
log line is written.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.exceptions import ApplicationException
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Reuse the caller's correlation id or mint one, and echo it back.

    Staff quote the echoed id when an inbox page looks wrong.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = request.state.correlation_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """One access log line per request, with latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        context = {
            "correlation_id": _correlation_id(request),
            "method": request.method,
            "path": request.url.path,
        }

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "Request failed",
                extra={**context, "error_type": type(exc).__name__, "response_time_ms": _elapsed_ms(started)},
            )
            raise

        logger.info(
            "Request completed",
            extra={**context, "status_code": response.status_code, "response_time_ms": _elapsed_ms(started)},
        )
        return response


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """
    Map application exceptions that escaped a route to their status code.

    Details are returned for client errors only; repository details may
    carry database error codes and stay in the logs.
    """
    status_code = getattr(exc, "status_code", 500)
    is_client_error = status_code < 500

    log = logger.warning if is_client_error else logger.error
    log(
        "Application exception",
        extra={
            "correlation_id": _correlation_id(request),
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "status_code": status_code,
        },
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "details": exc.details if is_client_error else None,
            "correlation_id": _correlation_id(request),
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Last-resort handler: log the failure and answer a bare 500.

    The exception text is only echoed in development.
    """
    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": _correlation_id(request),
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc),
        },
    )

    app_settings = getattr(request.app.state, "settings", None)
    show_debug = getattr(app_settings, "environment", None) == "development"

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "correlation_id": _correlation_id(request),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if show_debug else None,
        },
    )
