# Hey future me - this is THE FIX for "database is locked" errors!
#
# SQLite allows ONE writer at a time. The cron tick, a manual tick from the admin
# dashboard and a "start batch" insert can all hit the DB at the same moment, and
# the loser gets "database is locked". Those locks are temporary, so waiting a
# little and retrying almost always works.
#
# USAGE:
#   @with_db_retry(max_attempts=3)
#   async def _claim_next(self, batch):
#       async with self._scope() as repos:  # fresh session per attempt
#           ...
#
# Wrap the whole unit of work, never a single repository method. After a failed
# flush the session can only be rolled back, so retrying inside it cannot work.
#
# DatabaseLockMetrics counts how often a lock is hit; /api/health exposes it.
"""Database retry utilities for handling SQLite lock errors."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class DatabaseLockMetrics:
    """Process-wide counters for database lock events."""

    _instance: DatabaseLockMetrics | None = None

    def __init__(self) -> None:
        """Initialize metrics counters."""
        self.lock_attempts: int = 0
        self.lock_retries: int = 0
        self.lock_failures: int = 0
        self.total_wait_time_ms: float = 0.0
        self.last_lock_event: float | None = None

    @classmethod
    def get_instance(cls) -> DatabaseLockMetrics:
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def record_retry(self, wait_time_ms: float) -> None:
        """Record one retry after a lock error."""
        self.lock_retries += 1
        self.total_wait_time_ms += wait_time_ms
        self.last_lock_event = time.time()

    def record_failure(self) -> None:
        """Record a failed operation (all retries exhausted)."""
        self.lock_failures += 1
        self.last_lock_event = time.time()
        logger.warning(
            "Database lock failure recorded (total failures: %d)", self.lock_failures
        )

    def get_stats(self) -> dict[str, Any]:
        """Get all metrics as a dictionary."""
        return {
            "lock_attempts": self.lock_attempts,
            "lock_retries": self.lock_retries,
            "lock_failures": self.lock_failures,
            "total_wait_time_ms": round(self.total_wait_time_ms, 2),
            "retry_rate": round(
                self.lock_retries / self.lock_attempts if self.lock_attempts > 0 else 0,
                4,
            ),
            "last_lock_event_timestamp": self.last_lock_event,
        }

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        self.lock_attempts = 0
        self.lock_retries = 0
        self.lock_failures = 0
        self.total_wait_time_ms = 0.0
        self.last_lock_event = None


def is_lock_error(exception: BaseException) -> bool:
    """Check if an exception is a retryable database lock error."""
    if not isinstance(exception, OperationalError):
        return False

    error_msg = str(exception).lower()
    return "locked" in error_msg or "busy" in error_msg


def with_db_retry(
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator for retrying async database operations on lock errors.

    The delay grows 0.5s → 1s → 2s ... capped at max_delay. Only "locked"/"busy"
    OperationalErrors are retried, everything else is raised immediately.

    Args:
        max_attempts: Maximum attempts including the first one (default: 3)
        initial_delay: Initial delay in seconds (default: 0.5)
        max_delay: Maximum delay cap in seconds (default: 5.0)
        backoff_factor: Multiply delay by this each retry (default: 2.0)

    Returns:
        Decorated function with automatic retry logic.
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            metrics = DatabaseLockMetrics.get_instance()
            metrics.lock_attempts += 1
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)  # type: ignore[misc,no-any-return]
                except OperationalError as e:
                    if not is_lock_error(e) or attempt == max_attempts:
                        if is_lock_error(e):
                            logger.error(
                                "Database locked after %d attempts, giving up: %s.%s",
                                max_attempts,
                                func.__module__,
                                func.__qualname__,
                            )
                            metrics.record_failure()
                        raise

                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.1fs: %s.%s",
                        attempt,
                        max_attempts,
                        delay,
                        func.__module__,
                        func.__qualname__,
                    )
                    metrics.record_retry(delay * 1000)
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

            raise RuntimeError("Unexpected state in retry decorator")

        return wrapper  # type: ignore[return-value]

    return decorator
