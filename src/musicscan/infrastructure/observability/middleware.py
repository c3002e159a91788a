"""Middleware for observability: request/response logging."""

import logging
import time
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from musicscan.infrastructure.observability.logging import (
    get_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


# Hey future me, uptime monitors poll /api/health constantly and would drown everything
# else at INFO. Quiet paths log at DEBUG unless they fail.
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging HTTP requests and responses."""

    def __init__(
        self,
        app: ASGIApp,
        quiet_paths: tuple[str, ...] = ("/api/health",),
    ) -> None:
        """Initialize middleware.

        Args:
            app: ASGI application
            quiet_paths: Path prefixes logged at DEBUG when the response is < 400
        """
        super().__init__(app)
        self.quiet_paths = quiet_paths

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Set the correlation ID, log the request, and echo the ID in the response."""
        set_correlation_id(request.headers.get(CORRELATION_HEADER))

        method = request.method
        path = request.url.path
        quiet = path.startswith(self.quiet_paths)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(
                "Request failed: %s %s",
                method,
                path,
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": int((time.perf_counter() - start_time) * 1000),
                    "error_type": type(e).__name__,
                },
            )
            raise

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        level = logging.DEBUG if quiet and response.status_code < 400 else logging.INFO
        status_mark = "✓" if response.status_code < 400 else "✗"
        logger.log(
            level,
            "%s %s %s → %d (%dms)",
            status_mark,
            method,
            path,
            response.status_code,
            duration_ms,
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": request.client.host if request.client else "unknown",
            },
        )

        response.headers[CORRELATION_HEADER] = get_correlation_id()
        return response
