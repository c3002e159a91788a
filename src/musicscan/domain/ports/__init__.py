"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from musicscan.domain.entities import (
    BatchRecord,
    QueueItem,
    WorkItem,
)


# Hey future me, IBatchRecordRepository is a PORT! The tick handler never touches SQL directly -
# "which batch is running?" is a query behind this interface, so the whole state machine in
# application/workers/batch_queue_processor.py can be tested against an in-memory fake.
# The SQLAlchemy implementation lives in infrastructure/persistence/repositories.py.
class IBatchRecordRepository(ABC):
    """Repository interface for BatchRecord entities."""

    @abstractmethod
    async def add(self, batch: BatchRecord) -> None:
        """Add a new batch record."""
        pass

    @abstractmethod
    async def get_by_id(self, batch_id: str) -> BatchRecord | None:
        """Get a batch record by ID."""
        pass

    @abstractmethod
    async def update(self, batch: BatchRecord) -> None:
        """Update an existing batch record."""
        pass

    @abstractmethod
    async def find_running(self, process_type: str) -> BatchRecord | None:
        """Get the newest RUNNING batch of a process type."""
        pass

    @abstractmethod
    async def get_latest(self, process_type: str) -> BatchRecord | None:
        """Get the most recently created batch of a process type (any status)."""
        pass

    @abstractmethod
    async def find_open(self, process_type: str) -> BatchRecord | None:
        """Get the newest batch of a process type that is not finished yet.

        Open means PENDING or RUNNING, or any status while it still owns PENDING or
        PROCESSING items (e.g. a completed batch after retry_failed).
        """
        pass

    @abstractmethod
    async def find_recoverable(self, process_type: str) -> BatchRecord | None:
        """Get the newest non-running batch of a process type that still owns PENDING items."""
        pass


class IQueueItemRepository(ABC):
    """Repository interface for QueueItem entities."""

    @abstractmethod
    async def add_many(self, items: list[QueueItem]) -> None:
        """Add queue items (caller is responsible for chunking)."""
        pass

    @abstractmethod
    async def get_by_id(self, queue_item_id: str) -> QueueItem | None:
        """Get a queue item by its row ID."""
        pass

    @abstractmethod
    async def update(self, item: QueueItem) -> None:
        """Update an existing queue item."""
        pass

    @abstractmethod
    async def list_claimable(
        self, batch_id: str, now: datetime, limit: int = 10
    ) -> list[QueueItem]:
        """List PENDING items of a batch that are due at `now`.

        Ordered by priority (highest first), then created_at (oldest first).
        """
        pass

    @abstractmethod
    async def claim(self, queue_item_id: str, now: datetime) -> bool:
        """Atomically move one item PENDING → PROCESSING and bump attempts.

        Compare-and-swap: only succeeds while the row is still PENDING.

        Returns:
            True if this caller won the claim, False if somebody else did
        """
        pass

    @abstractmethod
    async def list_abandoned(
        self, batch_id: str, claimed_before: datetime
    ) -> list[QueueItem]:
        """List PROCESSING items of a batch last touched before `claimed_before`."""
        pass

    @abstractmethod
    async def count_by_status(self, batch_id: str) -> dict[str, int]:
        """Count a batch's items grouped by status."""
        pass

    @abstractmethod
    async def list_orphaned_pending(self, item_types: list[str]) -> list[QueueItem]:
        """List PENDING items of the given item types whose batch record doesn't exist."""
        pass

    @abstractmethod
    async def list_failed(
        self, process_type: str, item_types: list[str]
    ) -> list[QueueItem]:
        """List FAILED items of the given item types owned by batches of `process_type`."""
        pass


@dataclass
class BatchQueueRepositories:
    """Both batch queue repositories bound to one transaction."""

    batches: IBatchRecordRepository
    items: IQueueItemRepository


# One call = one short transaction. Commit on clean exit, rollback on exception.
RepositoryScope = Callable[[], AbstractAsyncContextManager[BatchQueueRepositories]]


# Yo, IBatchWorker is the seam between the generic tick handler and the domain-specific
# generation logic! The tick handler knows NOTHING about blog posts or composers - it hands
# a WorkItem to perform() and looks at what comes back:
# - returns dict → item completed
# - raises PoisonPayloadError → item failed immediately
# - raises TransientWorkerError (or anything unrecognized) → retry with backoff
class IBatchWorker(ABC):
    """Interface for per-item batch workers."""

    @property
    @abstractmethod
    def process_type(self) -> str:
        """Process type this worker owns (e.g. 'blog_generation')."""
        pass

    @property
    @abstractmethod
    def item_types(self) -> tuple[str, ...]:
        """Item types belonging to this process type (scopes recovery + retry_failed)."""
        pass

    def default_priority(self, item: dict[str, Any]) -> int:
        """Priority for an enqueued item that didn't bring its own."""
        return 0

    def default_item_type(self) -> str:
        """Item type used when an enqueued item doesn't name one."""
        return self.item_types[0]

    @abstractmethod
    async def perform(self, item: WorkItem) -> dict[str, Any]:
        """Process one queue item.

        Args:
            item: Work payload (item_id, item_type, metadata)

        Returns:
            Result payload (logged, not persisted)

        Raises:
            PoisonPayloadError: Item can never succeed as-is
            TransientWorkerError: Try again later
        """
        pass


__all__ = [
    "BatchQueueRepositories",
    "IBatchRecordRepository",
    "IBatchWorker",
    "IQueueItemRepository",
    "RepositoryScope",
]
