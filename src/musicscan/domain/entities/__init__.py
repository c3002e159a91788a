"""Domain entities for the batch queue."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from musicscan.domain.entities.error_codes import (
    INCOMPLETE_METADATA,
    NON_RETRYABLE_MARKERS,
    WorkerErrorKind,
    classify_error,
    describe_error,
    is_non_retryable_message,
)
from musicscan.domain.entities.retry_policy import backoff
from musicscan.domain.exceptions import InvalidStateException

ORPHANED_ERROR_MESSAGE = "orphaned: missing batch record"
ABANDONED_ERROR_MESSAGE = "abandoned: worker never reported back (process restarted?)"


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - the queue item state machine:
#   PENDING → PROCESSING → COMPLETED
#                        → PENDING (retry scheduled, scheduled_at moved forward)
#                        → FAILED  (poison payload or attempts exhausted)
# FAILED is terminal for the tick handler. Only the retry_failed admin command
# moves it back to PENDING (see QueueItem.reset_for_retry).
class QueueItemStatus(str, Enum):
    """Status of a queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# A batch is "done" via COMPLETED even if some of its items failed - the failed
# counters tell the story. There is no FAILED batch state.
class BatchStatus(str, Enum):
    """Status of a batch record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(frozen=True)
class WorkItem:
    """Payload handed to a worker for one queue item."""

    item_id: str
    item_type: str
    metadata: dict[str, Any]
    attempt: int = 1


@dataclass
class QueueItem:
    """A persisted unit of work owned by a batch record."""

    id: str
    batch_id: str
    item_id: str
    item_type: str
    status: QueueItemStatus = QueueItemStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    scheduled_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    processed_at: datetime | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        """Validate queue item data."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.attempts < 0:
            raise ValueError("attempts cannot be negative")

    @classmethod
    def create(
        cls,
        batch_id: str,
        item_type: str,
        metadata: dict[str, Any] | None = None,
        item_id: str | None = None,
        priority: int = 0,
        max_attempts: int = 3,
        now: datetime | None = None,
    ) -> "QueueItem":
        """Create a new pending item, generating ids where missing."""
        created = now or utc_now()
        return cls(
            id=str(uuid.uuid4()),
            batch_id=batch_id,
            item_id=item_id or str(uuid.uuid4()),
            item_type=item_type,
            priority=priority,
            max_attempts=max_attempts,
            metadata=dict(metadata or {}),
            scheduled_at=created,
            created_at=created,
            updated_at=created,
        )

    @property
    def is_exhausted(self) -> bool:
        """True once no attempts are left."""
        return self.attempts >= self.max_attempts

    @property
    def is_finished(self) -> bool:
        """True for terminal states."""
        return self.status in (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED)

    def is_due(self, now: datetime) -> bool:
        """Check whether the item may be claimed at `now`."""
        return self.scheduled_at is None or self.scheduled_at <= now

    def to_work_item(self) -> WorkItem:
        """Build the worker payload for this item."""
        return WorkItem(
            item_id=self.item_id,
            item_type=self.item_type,
            metadata=dict(self.metadata),
            attempt=self.attempts,
        )

    def claim(self, now: datetime) -> None:
        """Move PENDING → PROCESSING and consume one attempt."""
        if self.status != QueueItemStatus.PENDING:
            raise InvalidStateException(f"Cannot claim queue item in status {self.status.value}")
        self.status = QueueItemStatus.PROCESSING
        self.attempts += 1
        self.updated_at = now

    def complete(self, now: datetime) -> None:
        """Mark the claimed item as successfully processed."""
        if self.status != QueueItemStatus.PROCESSING:
            raise InvalidStateException(
                f"Cannot complete queue item in status {self.status.value}"
            )
        self.status = QueueItemStatus.COMPLETED
        self.error_message = None
        self.processed_at = now
        self.updated_at = now

    def fail(self, error_message: str, now: datetime) -> None:
        """Mark the item as permanently failed."""
        if self.is_finished:
            raise InvalidStateException(f"Cannot fail queue item in status {self.status.value}")
        self.status = QueueItemStatus.FAILED
        self.error_message = error_message
        self.processed_at = now
        self.updated_at = now

    def schedule_retry(self, error_message: str, now: datetime) -> None:
        """Put a failed attempt back to PENDING with backoff.

        Raises:
            InvalidStateException: If the item is not processing or has no attempts left
        """
        if self.status != QueueItemStatus.PROCESSING:
            raise InvalidStateException(
                f"Cannot schedule retry for queue item in status {self.status.value}"
            )
        if self.is_exhausted:
            raise InvalidStateException("Queue item has no attempts left")
        self.status = QueueItemStatus.PENDING
        self.error_message = error_message
        self.scheduled_at = now + backoff(self.attempts)
        self.updated_at = now

    def release_abandoned(self, now: datetime) -> bool:
        """Recover a PROCESSING item whose worker call never reported back.

        The claim already consumed an attempt. With attempts left the item goes back to
        PENDING (eligible now), otherwise it fails for good.

        Returns:
            True if the item was failed, False if it was re-queued
        """
        if self.status != QueueItemStatus.PROCESSING:
            raise InvalidStateException(
                f"Cannot release queue item in status {self.status.value}"
            )
        if self.is_exhausted:
            self.fail(ABANDONED_ERROR_MESSAGE, now)
            return True
        self.status = QueueItemStatus.PENDING
        self.error_message = ABANDONED_ERROR_MESSAGE
        self.scheduled_at = now
        self.updated_at = now
        return False

    def reset_for_retry(self, now: datetime, reset_attempts: bool = True) -> None:
        """Manually re-queue a FAILED item (admin retry_failed command).

        Args:
            now: Current time, item becomes eligible immediately
            reset_attempts: True = full amnesty (attempts back to 0),
                False = one more try (attempts lowered to max_attempts - 1)
        """
        if self.status != QueueItemStatus.FAILED:
            raise InvalidStateException(
                f"Cannot reset queue item in status {self.status.value}"
            )
        if reset_attempts:
            self.attempts = 0
        else:
            self.attempts = min(self.attempts, self.max_attempts - 1)
        self.status = QueueItemStatus.PENDING
        self.error_message = None
        self.processed_at = None
        self.scheduled_at = now
        self.updated_at = now

    def snapshot(self) -> dict[str, Any]:
        """Small dict for BatchRecord.current_items (observability only)."""
        return {
            "id": self.id,
            "item_id": self.item_id,
            "item_type": self.item_type,
            "attempts": self.attempts,
            "metadata": dict(self.metadata),
        }


@dataclass
class BatchRecord:
    """A persisted run of one process type, owning many queue items."""

    id: str
    process_type: str
    status: BatchStatus = BatchStatus.PENDING
    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_heartbeat: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    current_items: dict[str, Any] | None = None

    @classmethod
    def create(
        cls, process_type: str, total_items: int, now: datetime | None = None
    ) -> "BatchRecord":
        """Create a new PENDING batch."""
        created = now or utc_now()
        return cls(
            id=str(uuid.uuid4()),
            process_type=process_type,
            total_items=total_items,
            created_at=created,
            updated_at=created,
        )

    @property
    def is_running(self) -> bool:
        """True while the tick handler consumes this batch."""
        return self.status == BatchStatus.RUNNING

    def start(self, now: datetime) -> None:
        """Move PENDING → RUNNING."""
        if self.status == BatchStatus.RUNNING:
            return
        if self.status != BatchStatus.PENDING:
            raise InvalidStateException(f"Cannot start batch in status {self.status.value}")
        self.status = BatchStatus.RUNNING
        self.started_at = self.started_at or now
        self.last_heartbeat = now
        self.updated_at = now

    def reactivate(self, now: datetime) -> None:
        """Bring a stale (pending/completed) batch back to RUNNING."""
        self.status = BatchStatus.RUNNING
        self.completed_at = None
        self.started_at = self.started_at or now
        self.last_heartbeat = now
        self.updated_at = now

    def heartbeat(self, now: datetime) -> None:
        """Refresh the liveness timestamp."""
        self.last_heartbeat = now
        self.updated_at = now

    def record_success(self, now: datetime) -> None:
        """Count one item that finished successfully."""
        self.processed_items += 1
        self.successful_items += 1
        self.updated_at = now

    def record_failure(self, now: datetime) -> None:
        """Count one item that failed for good (retries are NOT counted)."""
        self.processed_items += 1
        self.failed_items += 1
        self.updated_at = now

    def release_failed(self, count: int, now: datetime) -> None:
        """Un-count failed items that retry_failed put back into the queue.

        Keeps processed == successful + failed true once the batch drains again.
        """
        self.processed_items = max(self.processed_items - count, 0)
        self.failed_items = max(self.failed_items - count, 0)
        self.updated_at = now

    def complete(self, now: datetime) -> None:
        """Mark the batch as done."""
        self.status = BatchStatus.COMPLETED
        self.completed_at = now
        self.current_items = None
        self.updated_at = now

    def heartbeat_age_seconds(self, now: datetime) -> float | None:
        """Seconds since the last heartbeat (None if never beaten)."""
        if self.last_heartbeat is None:
            return None
        return max((now - self.last_heartbeat).total_seconds(), 0.0)


@dataclass(frozen=True)
class QueueStats:
    """Queue item counts grouped by status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> "QueueStats":
        """Build stats from a {status: count} mapping."""
        return cls(
            pending=counts.get(QueueItemStatus.PENDING.value, 0),
            processing=counts.get(QueueItemStatus.PROCESSING.value, 0),
            completed=counts.get(QueueItemStatus.COMPLETED.value, 0),
            failed=counts.get(QueueItemStatus.FAILED.value, 0),
        )

    @property
    def open_items(self) -> int:
        """Items that still need a tick."""
        return self.pending + self.processing

    def to_dict(self) -> dict[str, int]:
        """Serialize for the status endpoint."""
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
        }


class TickOutcome(str, Enum):
    """What a single tick did."""

    IDLE = "idle"
    WAITING = "waiting"
    BATCH_COMPLETED = "batch_completed"
    ITEM_PROCESSED = "item_processed"
    ORPHANS_FAILED = "orphans_failed"


class ItemOutcome(str, Enum):
    """What happened to the item processed by a tick."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


_TICK_MESSAGES: dict[TickOutcome, str] = {
    TickOutcome.IDLE: "No active batch and no pending items",
    TickOutcome.WAITING: "Waiting",
    TickOutcome.BATCH_COMPLETED: "Batch completed",
    TickOutcome.ORPHANS_FAILED: "Failed orphaned queue items",
}


@dataclass(frozen=True)
class TickResult:
    """Result of one tick handler invocation."""

    outcome: TickOutcome
    process_type: str
    batch_id: str | None = None
    queue_item_id: str | None = None
    item_id: str | None = None
    item_type: str | None = None
    item_outcome: ItemOutcome | None = None
    error_message: str | None = None
    orphaned_count: int = 0

    @property
    def message(self) -> str:
        """Human-readable summary for the trigger response."""
        if self.outcome == TickOutcome.ITEM_PROCESSED and self.item_outcome:
            return f"Processed {self.item_type} {self.item_id}: {self.item_outcome.value}"
        if self.outcome == TickOutcome.ORPHANS_FAILED:
            return f"{_TICK_MESSAGES[self.outcome]} ({self.orphaned_count})"
        return _TICK_MESSAGES.get(self.outcome, self.outcome.value)


@dataclass(frozen=True)
class BatchStatusReport:
    """Latest batch plus queue statistics for the status query."""

    process_type: str
    batch: BatchRecord | None
    queue_stats: QueueStats
    heartbeat_age_seconds: float | None = None
    is_stale: bool = False


__all__ = [
    "ABANDONED_ERROR_MESSAGE",
    "INCOMPLETE_METADATA",
    "NON_RETRYABLE_MARKERS",
    "ORPHANED_ERROR_MESSAGE",
    "BatchRecord",
    "BatchStatus",
    "BatchStatusReport",
    "ItemOutcome",
    "QueueItem",
    "QueueItemStatus",
    "QueueStats",
    "TickOutcome",
    "TickResult",
    "WorkItem",
    "WorkerErrorKind",
    "backoff",
    "classify_error",
    "describe_error",
    "is_non_retryable_message",
    "utc_now",
]
