"""Batch Tick Worker - optional in-process replacement for the external cron trigger.

Hey future me - this is OFF by default (BATCH_TICK_WORKER_ENABLED=false)!

Production triggers ticks from outside: a cron job POSTs to
/api/batch/{process_type}/tick every minute. That keeps "how fast do we burn AI quota"
an ops decision. For local dev or a single-box install without cron, enable this
worker and it does the same thing from inside the app:

    every tick_interval_seconds:
        for process_type in tick_process_types:
            processor.tick(process_type)

Ticks run one after the other, never overlapping. A tick that raises (DB hiccup) is
logged and the loop keeps going - the next interval simply tries again.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any

from musicscan.application.workers.batch_queue_processor import BatchQueueProcessor
from musicscan.domain.entities import TickOutcome
from musicscan.infrastructure.observability.logging import (
    log_worker_health,
    set_correlation_id,
)

logger = logging.getLogger(__name__)

HEALTH_LOG_EVERY_CYCLES = 10


class BatchTickWorker:
    """Worker that calls the tick handler on a fixed interval.

    Lifecycle:
    - Created in lifecycle.py during app startup (only when enabled)
    - Runs as asyncio task via start()
    - Stopped gracefully via stop() during shutdown
    """

    def __init__(
        self,
        processor: BatchQueueProcessor,
        process_types: list[str],
        interval_seconds: float = 60,
    ) -> None:
        """Initialize the tick worker.

        Args:
            processor: Tick handler
            process_types: Process types to tick each cycle (unknown ones are skipped)
            interval_seconds: Seconds between cycles (default: 60)
        """
        self._processor = processor
        self._process_types = [
            process_type
            for process_type in process_types
            if process_type in processor.registry
        ]
        skipped = sorted(set(process_types) - set(self._process_types))
        if skipped:
            logger.warning("BatchTickWorker ignoring unknown process types: %s", skipped)

        self._interval = interval_seconds
        self._running = False
        self._started_at: float | None = None
        self._stats: dict[str, Any] = {
            "cycles_completed": 0,
            "ticks_total": 0,
            "items_processed": 0,
            "errors_total": 0,
            "last_tick_at": None,
            "last_outcomes": {},
        }

    async def start(self) -> None:
        """Run tick cycles until stop() is called."""
        self._running = True
        self._started_at = time.monotonic()
        logger.info(
            "BatchTickWorker started (interval=%ss, process_types=%s)",
            self._interval,
            self._process_types,
        )

        while self._running:
            await self.run_cycle()
            if self._stats["cycles_completed"] % HEALTH_LOG_EVERY_CYCLES == 0:
                log_worker_health(
                    logger,
                    "batch_tick",
                    cycles_completed=self._stats["cycles_completed"],
                    errors_total=self._stats["errors_total"],
                    uptime_seconds=time.monotonic() - self._started_at,
                    extra_stats={"items_processed": self._stats["items_processed"]},
                )
            await asyncio.sleep(self._interval)

    def stop(self) -> None:
        """Signal the worker to stop after the current cycle."""
        self._running = False
        logger.info("BatchTickWorker stopping...")

    async def run_cycle(self) -> None:
        """Tick every configured process type once."""
        for process_type in self._process_types:
            # One correlation ID per tick so its log lines can be grepped together
            set_correlation_id(None)
            self._stats["ticks_total"] += 1
            try:
                result = await self._processor.tick(process_type)
            except Exception as e:
                # Log but don't crash - we'll try again next cycle
                self._stats["errors_total"] += 1
                logger.exception("Tick for %s failed: %s", process_type, e)
                continue

            self._stats["last_outcomes"][process_type] = result.outcome.value
            if result.outcome == TickOutcome.ITEM_PROCESSED:
                self._stats["items_processed"] += 1

        self._stats["cycles_completed"] += 1
        self._stats["last_tick_at"] = datetime.now(UTC).isoformat()

    def get_stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            **self._stats,
            "last_outcomes": dict(self._stats["last_outcomes"]),
            "running": self._running,
            "interval_seconds": self._interval,
            "process_types": list(self._process_types),
        }


def create_batch_tick_worker(
    processor: BatchQueueProcessor,
    process_types: list[str],
    interval_seconds: float = 60,
) -> BatchTickWorker:
    """Create a BatchTickWorker with the given configuration."""
    return BatchTickWorker(
        processor=processor,
        process_types=process_types,
        interval_seconds=interval_seconds,
    )
