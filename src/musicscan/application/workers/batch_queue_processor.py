"""Batch Queue Processor - advances a DB-backed batch queue by ONE item per tick.

Hey future me - this is the heart of every batch run (blog posts, composer stories,
artist stories)!

There is no in-process scheduler. Something external (cron, the admin dashboard,
or the optional BatchTickWorker) calls tick(process_type) on a fixed interval, and
each call does at most ONE worker invocation. That bounds the paid AI calls to one
per interval no matter how deep the queue is.

ONE TICK:
1. Find the RUNNING batch of this process type
2. None running? Recovery sweep:
   - a non-running batch of THIS process type still owns pending items → reactivate it
   - pending items of our item types point at a batch that doesn't exist → fail them
     ("orphaned: missing batch record") and stop, no worker call
3. Nothing at all → IDLE
4. Heartbeat the batch
5. Claim the next item (priority DESC, created_at ASC, scheduled_at <= now) with a
   compare-and-swap UPDATE. Nothing claimable → BATCH_COMPLETED or WAITING
   (PROCESSING items abandoned by a crashed process go back to pending first)
6-7. Call the worker (with a timeout - a hanging AI call must not wedge the queue)
8-9. Success → completed. Failure → poison fails now, transient retries with
   5/10/15 minute backoff until max_attempts
10. Return a TickResult

Every step is its own short transaction. The DB is NEVER held open while the
worker runs (AI calls take minutes, SQLite would be locked the whole time).
On "database is locked" a step is retried as a whole in a FRESH session - a
session whose flush failed can only be rolled back, never retried.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from musicscan.application.workers.registry import WorkerRegistry
from musicscan.config.settings import BatchSettings
from musicscan.domain.entities import (
    ORPHANED_ERROR_MESSAGE,
    BatchRecord,
    BatchStatus,
    BatchStatusReport,
    ItemOutcome,
    QueueItem,
    QueueStats,
    TickOutcome,
    TickResult,
    WorkerErrorKind,
    classify_error,
    describe_error,
    utc_now,
)
from musicscan.domain.exceptions import (
    EntityNotFoundException,
    InvalidStateException,
    OrphanedQueueError,
    TransientWorkerError,
    ValidationException,
)
from musicscan.domain.ports import BatchQueueRepositories, IBatchWorker, RepositoryScope
from musicscan.infrastructure.persistence.retry import with_db_retry

logger = logging.getLogger(__name__)

DRY_RUN_PREVIEW_SIZE = 10
EXHAUSTED_ERROR_MESSAGE = "max attempts exceeded"


@dataclass(frozen=True)
class StartResult:
    """Result of enqueueing a new batch."""

    message: str
    total_items: int
    batch_id: str | None = None
    dry_run: bool = False
    items: list[dict[str, Any]] = field(default_factory=list)


class BatchQueueProcessor:
    """Tick handler, recovery sweep and admin commands for the batch queue."""

    def __init__(
        self,
        repository_scope: RepositoryScope,
        registry: WorkerRegistry,
        settings: BatchSettings,
        clock: Callable[[], datetime] = utc_now,
        claim_window: int = 10,
    ) -> None:
        """Initialize the processor.

        Args:
            repository_scope: Opens one transaction with both repositories
            registry: process_type → worker lookup
            settings: Batch settings (timeouts, attempts, chunk size)
            clock: Source of "now" (tests pass a fake clock)
            claim_window: Candidates fetched per claim attempt (lost CAS races move on)
        """
        self._scope = repository_scope
        self._registry = registry
        self._settings = settings
        self._clock = clock
        self._claim_window = claim_window

    @property
    def registry(self) -> WorkerRegistry:
        """Registered workers."""
        return self._registry

    # =========================================================================
    # TICK
    # =========================================================================

    async def tick(self, process_type: str) -> TickResult:
        """Perform exactly one unit of queue progress for a process type.

        Per-item failures never escape - they end up in the item's error_message.
        Only infrastructure errors (DB down) propagate.

        Raises:
            ConfigurationError: If no worker is registered for process_type
        """
        worker = self._registry.get(process_type)

        batch_or_result = await self._locate_batch(process_type, worker)
        if isinstance(batch_or_result, TickResult):
            return batch_or_result
        batch = batch_or_result

        claimed = await self._claim_next(batch)
        if isinstance(claimed, TickResult):
            return claimed

        error = await self._perform(worker, claimed)
        return await self._record_outcome(process_type, claimed, error)

    @with_db_retry()
    async def _locate_batch(
        self, process_type: str, worker: IBatchWorker
    ) -> BatchRecord | TickResult:
        """Steps 1-4: find the running batch, recover one, or give up."""
        now = self._clock()

        async with self._scope() as repos:
            batch = await repos.batches.find_running(process_type)

            if batch is None:
                batch = await repos.batches.find_recoverable(process_type)
                if batch is not None:
                    self._resume(batch, now)

            if batch is None:
                orphaned = await self._fail_orphans(repos, process_type, worker, now)
                if orphaned:
                    return TickResult(
                        outcome=TickOutcome.ORPHANS_FAILED,
                        process_type=process_type,
                        orphaned_count=orphaned,
                    )
                logger.debug("No active %s batch and no pending items", process_type)
                return TickResult(outcome=TickOutcome.IDLE, process_type=process_type)

            batch.heartbeat(now)
            await repos.batches.update(batch)

        return batch

    def _resume(self, batch: BatchRecord, now: datetime) -> None:
        if batch.status == BatchStatus.PENDING:
            batch.start(now)
            logger.info(
                "Starting batch %s (%s, %d items)",
                batch.id,
                batch.process_type,
                batch.total_items,
            )
            return

        logger.warning(
            "Reactivating stale batch %s (%s) - it still owns pending items",
            batch.id,
            batch.process_type,
            extra={"batch_id": batch.id, "previous_status": batch.status.value},
        )
        batch.reactivate(now)

    async def _fail_orphans(
        self,
        repos: BatchQueueRepositories,
        process_type: str,
        worker: IBatchWorker,
        now: datetime,
    ) -> int:
        """Fail pending items whose batch record is gone. Returns how many."""
        orphans = await repos.items.list_orphaned_pending(list(worker.item_types))
        if not orphans:
            return 0

        by_batch: dict[str, list[QueueItem]] = {}
        for item in orphans:
            item.fail(ORPHANED_ERROR_MESSAGE, now)
            await repos.items.update(item)
            by_batch.setdefault(item.batch_id, []).append(item)

        # Hey future me - this is a data-integrity alarm (somebody deleted a batch row),
        # NOT a normal item failure. Keep it at ERROR so it shows up in alerting.
        for batch_id, items in by_batch.items():
            error = OrphanedQueueError(batch_id, [item.id for item in items])
            logger.error(
                "Orphaned queue items failed: %s",
                error.message,
                extra={
                    "process_type": process_type,
                    "batch_id": batch_id,
                    "queue_item_ids": error.item_ids,
                },
            )
        return len(orphans)

    @with_db_retry()
    async def _claim_next(self, batch: BatchRecord) -> QueueItem | TickResult:
        """Step 5-6: claim the next due item, or decide the batch is done/waiting."""
        now = self._clock()

        async with self._scope() as repos:
            await self._release_abandoned(repos, batch.id, now)

            candidates = await repos.items.list_claimable(
                batch.id, now, limit=self._claim_window
            )

            for candidate in candidates:
                if candidate.is_exhausted:
                    # Should have failed earlier - sweep it so it can't block the queue
                    logger.warning(
                        "Failing exhausted queue item %s (%d/%d attempts)",
                        candidate.id,
                        candidate.attempts,
                        candidate.max_attempts,
                    )
                    candidate.fail(candidate.error_message or EXHAUSTED_ERROR_MESSAGE, now)
                    await repos.items.update(candidate)
                    await self._count_failure(repos, batch.id, now)
                    continue

                if not await repos.items.claim(candidate.id, now):
                    logger.info(
                        "Lost claim race for queue item %s, trying next candidate",
                        candidate.id,
                    )
                    continue

                claimed = await repos.items.get_by_id(candidate.id)
                if claimed is None:
                    raise EntityNotFoundException("QueueItem", candidate.id)

                current = await repos.batches.get_by_id(batch.id)
                if current is not None:
                    current.current_items = claimed.snapshot()
                    current.heartbeat(now)
                    await repos.batches.update(current)
                return claimed

            stats = QueueStats.from_counts(await repos.items.count_by_status(batch.id))
            if stats.open_items > 0:
                logger.debug(
                    "Batch %s waiting (%d pending, %d processing)",
                    batch.id,
                    stats.pending,
                    stats.processing,
                )
                return TickResult(
                    outcome=TickOutcome.WAITING,
                    process_type=batch.process_type,
                    batch_id=batch.id,
                )

            current = await repos.batches.get_by_id(batch.id)
            if current is None:
                raise EntityNotFoundException("BatchRecord", batch.id)
            current.complete(now)
            await repos.batches.update(current)

        logger.info(
            "Batch %s (%s) completed: %d/%d successful, %d failed",
            current.id,
            current.process_type,
            current.successful_items,
            current.processed_items,
            current.failed_items,
        )
        return TickResult(
            outcome=TickOutcome.BATCH_COMPLETED,
            process_type=batch.process_type,
            batch_id=batch.id,
        )

    async def _release_abandoned(
        self, repos: BatchQueueRepositories, batch_id: str, now: datetime
    ) -> None:
        """Re-queue (or fail) PROCESSING items whose worker call can no longer report back.

        A live tick always records its outcome within worker_timeout_seconds, so a
        claim older than that plus the grace belongs to a process that died mid-item.
        """
        threshold = now - timedelta(
            seconds=self._settings.worker_timeout_seconds
            + self._settings.abandoned_grace_seconds
        )
        for item in await repos.items.list_abandoned(batch_id, threshold):
            failed = item.release_abandoned(now)
            await repos.items.update(item)
            if failed:
                await self._count_failure(repos, batch_id, now)
            logger.warning(
                "Reclaimed abandoned queue item %s (%s %s, attempt %d/%d): %s",
                item.id,
                item.item_type,
                item.item_id,
                item.attempts,
                item.max_attempts,
                "failed" if failed else "back to pending",
                extra={"queue_item_id": item.id, "batch_id": batch_id},
            )

    async def _perform(self, worker: IBatchWorker, item: QueueItem) -> BaseException | None:
        """Step 7: run the worker outside any transaction. Returns the error, if any."""
        timeout = self._settings.worker_timeout_seconds
        logger.info(
            "Processing %s %s (attempt %d/%d)",
            item.item_type,
            item.item_id,
            item.attempts,
            item.max_attempts,
            extra={"queue_item_id": item.id, "batch_id": item.batch_id},
        )

        try:
            async with asyncio.timeout(timeout):
                await worker.perform(item.to_work_item())
        except TimeoutError:
            return TransientWorkerError(
                f"Worker timed out after {timeout:.0f}s", error_code="timeout"
            )
        except Exception as e:
            # Any worker failure becomes item state, never a failed tick
            return e
        return None

    @with_db_retry()
    async def _record_outcome(
        self, process_type: str, claimed: QueueItem, error: BaseException | None
    ) -> TickResult:
        """Steps 8-10: persist the outcome of the worker call."""
        now = self._clock()
        error_message: str | None = None

        async with self._scope() as repos:
            item = await repos.items.get_by_id(claimed.id)
            if item is None:
                raise EntityNotFoundException("QueueItem", claimed.id)

            if error is None:
                item.complete(now)
                outcome = ItemOutcome.COMPLETED
            else:
                error_message = describe_error(error)
                kind = classify_error(error)
                if kind is WorkerErrorKind.TRANSIENT and not item.is_exhausted:
                    item.schedule_retry(error_message, now)
                    outcome = ItemOutcome.RETRY_SCHEDULED
                else:
                    item.fail(error_message, now)
                    outcome = ItemOutcome.FAILED
            await repos.items.update(item)

            batch = await repos.batches.get_by_id(item.batch_id)
            if batch is not None:
                if outcome is ItemOutcome.COMPLETED:
                    batch.record_success(now)
                elif outcome is ItemOutcome.FAILED:
                    batch.record_failure(now)
                batch.current_items = None
                batch.heartbeat(now)
                await repos.batches.update(batch)

        self._log_outcome(item, outcome, error)
        return TickResult(
            outcome=TickOutcome.ITEM_PROCESSED,
            process_type=process_type,
            batch_id=item.batch_id,
            queue_item_id=item.id,
            item_id=item.item_id,
            item_type=item.item_type,
            item_outcome=outcome,
            error_message=error_message,
        )

    def _log_outcome(
        self, item: QueueItem, outcome: ItemOutcome, error: BaseException | None
    ) -> None:
        extra = {
            "queue_item_id": item.id,
            "batch_id": item.batch_id,
            "item_type": item.item_type,
            "attempts": item.attempts,
            "outcome": outcome.value,
        }
        if outcome is ItemOutcome.COMPLETED:
            logger.info("Completed %s %s", item.item_type, item.item_id, extra=extra)
        elif outcome is ItemOutcome.RETRY_SCHEDULED:
            logger.warning(
                "Retry scheduled for %s %s at %s: %s",
                item.item_type,
                item.item_id,
                item.scheduled_at.isoformat() if item.scheduled_at else "now",
                item.error_message,
                extra=extra,
            )
        else:
            logger.warning(
                "Failed %s %s after %d attempt(s) (%s): %s",
                item.item_type,
                item.item_id,
                item.attempts,
                classify_error(error).value if error else "exhausted",
                item.error_message,
                extra=extra,
            )

    async def _count_failure(
        self, repos: BatchQueueRepositories, batch_id: str, now: datetime
    ) -> None:
        batch = await repos.batches.get_by_id(batch_id)
        if batch is not None:
            batch.record_failure(now)
            await repos.batches.update(batch)

    # =========================================================================
    # ADMIN COMMANDS
    # =========================================================================

    async def status(self, process_type: str) -> BatchStatusReport:
        """Latest batch of a process type plus queue stats (read-only).

        Raises:
            ConfigurationError: If no worker is registered for process_type
        """
        self._registry.get(process_type)
        now = self._clock()

        async with self._scope() as repos:
            batch = await repos.batches.get_latest(process_type)
            if batch is None:
                return BatchStatusReport(
                    process_type=process_type, batch=None, queue_stats=QueueStats()
                )
            stats = QueueStats.from_counts(await repos.items.count_by_status(batch.id))

        age = batch.heartbeat_age_seconds(now)
        is_stale = (
            batch.is_running
            and age is not None
            and age > self._settings.stale_heartbeat_seconds
        )
        return BatchStatusReport(
            process_type=process_type,
            batch=batch,
            queue_stats=stats,
            heartbeat_age_seconds=age,
            is_stale=is_stale,
        )

    @with_db_retry()
    async def retry_failed(self, process_type: str, reset_attempts: bool = True) -> int:
        """Put FAILED items of a process type back into the queue.

        Orphaned items (batch row gone) stay failed - they would just be orphan-failed
        again on the next tick. A completed batch that gets items back is picked up by
        the recovery sweep on the next tick.

        Args:
            process_type: Process type to scope by
            reset_attempts: True = attempts back to 0 (full amnesty),
                False = attempts lowered to max_attempts - 1 (one more try)

        Returns:
            Number of items reset

        Raises:
            ConfigurationError: If no worker is registered for process_type
        """
        worker = self._registry.get(process_type)
        now = self._clock()

        async with self._scope() as repos:
            failed = await repos.items.list_failed(process_type, list(worker.item_types))
            per_batch: Counter[str] = Counter()
            for item in failed:
                item.reset_for_retry(now, reset_attempts=reset_attempts)
                await repos.items.update(item)
                per_batch[item.batch_id] += 1

            for batch_id, count in per_batch.items():
                batch = await repos.batches.get_by_id(batch_id)
                if batch is not None:
                    batch.release_failed(count, now)
                    await repos.batches.update(batch)

        logger.info(
            "Reset %d failed %s item(s) to pending (reset_attempts=%s)",
            len(failed),
            process_type,
            reset_attempts,
        )
        return len(failed)

    async def start(
        self,
        process_type: str,
        items: list[dict[str, Any]],
        dry_run: bool = False,
    ) -> StartResult:
        """Create a new PENDING batch with its queue items.

        Each item dict may carry item_id (or id), item_type, priority, metadata and
        max_attempts. Missing values come from the worker and settings.

        Raises:
            ConfigurationError: If no worker is registered for process_type
            InvalidStateException: If a batch of this process type is still open
                (pending, running, or owning unfinished items)
            ValidationException: If an item has an unknown item_type or bad fields
        """
        worker = self._registry.get(process_type)

        if not items:
            return StartResult(message="No items found to process", total_items=0)

        # Hey future me - PENDING counts as active! A batch that was started but not
        # ticked yet would otherwise let a second start through and every item would
        # hit the paid AI API twice.
        async with self._scope() as repos:
            active = await repos.batches.find_open(process_type)
        if active is not None:
            raise InvalidStateException(
                f"A {process_type} batch is already active ({active.id}, {active.status.value})"
            )

        now = self._clock()
        batch = BatchRecord.create(process_type, len(items), now=now)
        queue_items = [
            self._build_item(worker, batch.id, raw, index, now)
            for index, raw in enumerate(items)
        ]

        if dry_run:
            preview = [self._preview(item) for item in queue_items[:DRY_RUN_PREVIEW_SIZE]]
            return StartResult(
                message=f"Dry run: {len(queue_items)} items would be queued",
                total_items=len(queue_items),
                dry_run=True,
                items=preview,
            )

        await self._insert_batch(batch)

        # Commit per chunk - one huge INSERT would lock SQLite for every tick meanwhile
        chunk_size = self._settings.insert_chunk_size
        for offset in range(0, len(queue_items), chunk_size):
            chunk = queue_items[offset : offset + chunk_size]
            await self._insert_items(chunk)
            logger.debug(
                "Inserted queue items %d-%d of %d",
                offset + 1,
                offset + len(chunk),
                len(queue_items),
            )

        logger.info(
            "Created %s batch %s with %d items", process_type, batch.id, len(queue_items)
        )
        return StartResult(
            message=f"Batch created with {len(queue_items)} items",
            total_items=len(queue_items),
            batch_id=batch.id,
        )

    @with_db_retry()
    async def _insert_batch(self, batch: BatchRecord) -> None:
        async with self._scope() as repos:
            await repos.batches.add(batch)

    @with_db_retry()
    async def _insert_items(self, items: list[QueueItem]) -> None:
        async with self._scope() as repos:
            await repos.items.add_many(items)

    def _build_item(
        self,
        worker: IBatchWorker,
        batch_id: str,
        raw: dict[str, Any],
        index: int,
        now: datetime,
    ) -> QueueItem:
        item_type = raw.get("item_type") or worker.default_item_type()
        if item_type not in worker.item_types:
            raise ValidationException(
                f"Item type '{item_type}' does not belong to {worker.process_type} "
                f"(expected one of {list(worker.item_types)})"
            )

        metadata = raw.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValidationException(f"Item {index}: metadata must be an object")

        try:
            priority = int(raw["priority"]) if raw.get("priority") is not None else None
            max_attempts = int(raw.get("max_attempts") or self._settings.default_max_attempts)
        except (TypeError, ValueError) as e:
            raise ValidationException(f"Item {index}: {e}") from e
        if priority is None:
            priority = worker.default_priority({**raw, "metadata": metadata})
        if max_attempts < 1:
            raise ValidationException(f"Item {index}: max_attempts must be at least 1")

        item_id = raw.get("item_id") or raw.get("id")
        item = QueueItem.create(
            batch_id=batch_id,
            item_type=item_type,
            metadata=metadata,
            item_id=str(item_id) if item_id else None,
            priority=priority,
            max_attempts=max_attempts,
            now=now,
        )
        # Offset created_at by the submission index so created_at ASC keeps submission
        # order even when the whole list is enqueued within one clock tick
        item.created_at = now + timedelta(microseconds=index)
        return item

    @staticmethod
    def _preview(item: QueueItem) -> dict[str, Any]:
        return {
            "item_id": item.item_id,
            "item_type": item.item_type,
            "priority": item.priority,
            "metadata": item.metadata,
        }
