"""Observability infrastructure for structured logging."""

from musicscan.infrastructure.observability.logging import (
    configure_logging,
    get_correlation_id,
    log_worker_health,
    set_correlation_id,
)
from musicscan.infrastructure.observability.middleware import RequestLoggingMiddleware

__all__ = [
    "RequestLoggingMiddleware",
    "configure_logging",
    "get_correlation_id",
    "log_worker_health",
    "set_correlation_id",
]
