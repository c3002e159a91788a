"""Custom exception handlers for FastAPI application.

Converts domain exceptions into JSON error responses of the shape {"error": "..."}.
That shape is what the cron job and the admin dashboard already parse.

| exception                         | status |
|-----------------------------------|--------|
| ValidationException / bad request | 400    |
| ConfigurationError (unknown type) | 404    |
| EntityNotFoundException           | 404    |
| InvalidStateException             | 409    |
| OperationalError "locked"         | 503    |
| anything else                     | 500    |
"""

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from musicscan.domain.exceptions import (
    ConfigurationError,
    DomainException,
    EntityNotFoundException,
    InvalidStateException,
    ValidationException,
)
from musicscan.infrastructure.persistence.retry import is_lock_error

logger = logging.getLogger(__name__)

DB_BUSY_RETRY_AFTER_SECONDS = 3


def _error(status_code: int, message: Any, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


def _describe_validation_errors(errors: list[dict[str, Any]]) -> str:
    """Flatten pydantic errors into one readable line ("body.items.0.priority: ...")."""
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()))
        msg = error.get("msg", "invalid")
        parts.append(f"{location}: {msg}" if location else msg)
    return "; ".join(parts) or "Invalid request"


# Hey future me, this registers GLOBAL exception handlers! Must be called during app setup
# (create_app) before any request arrives. Without these, domain exceptions would leak as
# 500s with stack traces.
def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers for domain, validation and database exceptions.

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(ValidationException)
    async def validation_exception_handler(
        request: Request, exc: ValidationException
    ) -> JSONResponse:
        """Handle domain validation exceptions with 400 Bad Request."""
        logger.warning(
            "Validation error at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "error": exc.message},
        )
        return _error(status.HTTP_400_BAD_REQUEST, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle FastAPI request validation (missing upload, bad path params)."""
        message = _describe_validation_errors(list(exc.errors()))
        logger.warning(
            "Request validation failed at %s: %s",
            request.url.path,
            message,
            extra={"path": request.url.path},
        )
        return _error(status.HTTP_400_BAD_REQUEST, message)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        """Unknown process type → 404 (nothing registered under that name)."""
        logger.info(
            "Configuration error at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "error": exc.message},
        )
        return _error(status.HTTP_404_NOT_FOUND, exc.message)

    @app.exception_handler(EntityNotFoundException)
    async def entity_not_found_exception_handler(
        request: Request, exc: EntityNotFoundException
    ) -> JSONResponse:
        """Handle entity not found exceptions with 404 Not Found."""
        logger.info(
            "Entity not found at %s: %s %s",
            request.url.path,
            exc.entity_type,
            exc.entity_id,
            extra={
                "path": request.url.path,
                "entity_type": exc.entity_type,
                "entity_id": exc.entity_id,
            },
        )
        return _error(status.HTTP_404_NOT_FOUND, exc.message)

    @app.exception_handler(InvalidStateException)
    async def invalid_state_exception_handler(
        request: Request, exc: InvalidStateException
    ) -> JSONResponse:
        """Handle invalid state (batch already running) with 409 Conflict."""
        logger.warning(
            "Invalid state at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "error": exc.message},
        )
        return _error(status.HTTP_409_CONFLICT, exc.message)

    @app.exception_handler(DomainException)
    async def domain_exception_handler(
        request: Request, exc: DomainException
    ) -> JSONResponse:
        """Any other domain exception is a client-side problem → 400."""
        logger.warning(
            "Domain error at %s: %s",
            request.url.path,
            exc.message,
            extra={"path": request.url.path, "error": exc.message},
        )
        return _error(status.HTTP_400_BAD_REQUEST, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Keep HTTPException status codes but use the {"error": ...} body."""
        if exc.status_code >= 500:
            logger.error(
                "HTTP %d at %s: %s",
                exc.status_code,
                request.url.path,
                exc.detail,
                extra={"path": request.url.path, "status_code": exc.status_code},
            )
        else:
            logger.debug(
                "HTTP %d at %s: %s",
                exc.status_code,
                request.url.path,
                exc.detail,
                extra={"path": request.url.path, "status_code": exc.status_code},
            )
        return _error(exc.status_code, exc.detail, headers=getattr(exc, "headers", None))

    # Hey future me - "database is locked" after with_db_retry gave up means a long write
    # (big start insert, alembic) is holding SQLite. Tell the caller to come back soon
    # instead of returning a scary 500. The cron will just tick again next minute anyway.
    @app.exception_handler(OperationalError)
    async def database_operational_error_handler(
        request: Request, exc: OperationalError
    ) -> JSONResponse:
        """Database busy → 503 with Retry-After, other DB errors → 500."""
        if is_lock_error(exc):
            logger.warning(
                "Database busy at %s - asking client to retry",
                request.url.path,
                extra={"path": request.url.path, "error": str(exc)[:200]},
            )
            return _error(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "Database busy, please retry",
                headers={"Retry-After": str(DB_BUSY_RETRY_AFTER_SECONDS)},
            )

        logger.error(
            "Database error at %s: %s",
            request.url.path,
            str(exc)[:500],
            extra={"path": request.url.path, "error": str(exc)[:500]},
        )
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Database error occurred. Please try again.",
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Last resort - log with traceback, return a generic 500."""
        logger.exception(
            "Unhandled error at %s: %s",
            request.url.path,
            exc,
            extra={"path": request.url.path},
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
