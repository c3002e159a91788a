"""SQLAlchemy repository implementations for the batch queue."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from musicscan.domain.entities import (
    BatchRecord,
    BatchStatus,
    QueueItem,
    QueueItemStatus,
)
from musicscan.domain.exceptions import EntityNotFoundException, ValidationException
from musicscan.domain.ports import (
    BatchQueueRepositories,
    IBatchRecordRepository,
    IQueueItemRepository,
    RepositoryScope,
)
from musicscan.infrastructure.persistence.database import Database
from musicscan.infrastructure.persistence.models import (
    BatchProcessingStatusModel,
    BatchQueueItemModel,
    ensure_utc_aware,
)


def _aware(dt: datetime | None) -> datetime | None:
    return ensure_utc_aware(dt) if dt is not None else None


def _batch_to_entity(model: BatchProcessingStatusModel) -> BatchRecord:
    try:
        status = BatchStatus(model.status)
    except ValueError as e:
        raise ValidationException(
            f"Invalid batch status '{model.status}' for batch {model.id}"
        ) from e

    return BatchRecord(
        id=model.id,
        process_type=model.process_type,
        status=status,
        total_items=model.total_items,
        processed_items=model.processed_items,
        successful_items=model.successful_items,
        failed_items=model.failed_items,
        started_at=_aware(model.started_at),
        completed_at=_aware(model.completed_at),
        last_heartbeat=_aware(model.last_heartbeat),
        created_at=ensure_utc_aware(model.created_at),
        updated_at=ensure_utc_aware(model.updated_at),
        current_items=model.current_items,
    )


def _item_to_entity(model: BatchQueueItemModel) -> QueueItem:
    try:
        status = QueueItemStatus(model.status)
    except ValueError as e:
        raise ValidationException(
            f"Invalid queue item status '{model.status}' for item {model.id}"
        ) from e

    return QueueItem(
        id=model.id,
        batch_id=model.batch_id,
        item_id=model.item_id,
        item_type=model.item_type,
        status=status,
        attempts=model.attempts,
        max_attempts=model.max_attempts,
        priority=model.priority,
        metadata=dict(model.metadata_ or {}),
        error_message=model.error_message,
        scheduled_at=_aware(model.scheduled_at),
        created_at=ensure_utc_aware(model.created_at),
        processed_at=_aware(model.processed_at),
        updated_at=ensure_utc_aware(model.updated_at),
    )


class BatchRecordRepository(IBatchRecordRepository):
    """SQLAlchemy implementation of BatchRecord repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def add(self, batch: BatchRecord) -> None:
        """Add a new batch record."""
        model = BatchProcessingStatusModel(
            id=batch.id,
            process_type=batch.process_type,
            status=batch.status.value,
            total_items=batch.total_items,
            processed_items=batch.processed_items,
            successful_items=batch.successful_items,
            failed_items=batch.failed_items,
            current_items=batch.current_items,
            started_at=batch.started_at,
            completed_at=batch.completed_at,
            last_heartbeat=batch.last_heartbeat,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
        )
        self.session.add(model)

    async def get_by_id(self, batch_id: str) -> BatchRecord | None:
        """Get a batch record by ID."""
        # populate_existing: a CAS UPDATE earlier in this session bypasses the identity map
        model = await self.session.get(
            BatchProcessingStatusModel, batch_id, populate_existing=True
        )
        return _batch_to_entity(model) if model else None

    async def update(self, batch: BatchRecord) -> None:
        """Update an existing batch record."""
        model = await self.session.get(BatchProcessingStatusModel, batch.id)
        if not model:
            raise EntityNotFoundException("BatchRecord", batch.id)

        model.status = batch.status.value
        model.total_items = batch.total_items
        model.processed_items = batch.processed_items
        model.successful_items = batch.successful_items
        model.failed_items = batch.failed_items
        model.current_items = batch.current_items
        model.started_at = batch.started_at
        model.completed_at = batch.completed_at
        model.last_heartbeat = batch.last_heartbeat
        model.updated_at = batch.updated_at
        await self.session.flush()

    async def find_running(self, process_type: str) -> BatchRecord | None:
        """Get the newest RUNNING batch of a process type."""
        stmt = (
            select(BatchProcessingStatusModel)
            .where(
                BatchProcessingStatusModel.process_type == process_type,
                BatchProcessingStatusModel.status == BatchStatus.RUNNING.value,
            )
            .order_by(BatchProcessingStatusModel.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return _batch_to_entity(model) if model else None

    async def get_latest(self, process_type: str) -> BatchRecord | None:
        """Get the most recently created batch of a process type (any status)."""
        stmt = (
            select(BatchProcessingStatusModel)
            .where(BatchProcessingStatusModel.process_type == process_type)
            .order_by(BatchProcessingStatusModel.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return _batch_to_entity(model) if model else None

    async def find_open(self, process_type: str) -> BatchRecord | None:
        """Get the newest unfinished batch of a process type."""
        owns_open_items = exists().where(
            BatchQueueItemModel.batch_id == BatchProcessingStatusModel.id,
            BatchQueueItemModel.status.in_(
                [QueueItemStatus.PENDING.value, QueueItemStatus.PROCESSING.value]
            ),
        )
        stmt = (
            select(BatchProcessingStatusModel)
            .where(
                BatchProcessingStatusModel.process_type == process_type,
                or_(
                    BatchProcessingStatusModel.status.in_(
                        [BatchStatus.PENDING.value, BatchStatus.RUNNING.value]
                    ),
                    owns_open_items,
                ),
            )
            .order_by(BatchProcessingStatusModel.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return _batch_to_entity(model) if model else None

    # Hey future me - the JOIN on process_type is what keeps a composer tick from
    # resurrecting a stalled blog batch! Never scope this by item_type alone.
    async def find_recoverable(self, process_type: str) -> BatchRecord | None:
        """Get the newest non-running batch of a process type that still owns PENDING items."""
        owns_pending = exists().where(
            BatchQueueItemModel.batch_id == BatchProcessingStatusModel.id,
            BatchQueueItemModel.status == QueueItemStatus.PENDING.value,
        )
        stmt = (
            select(BatchProcessingStatusModel)
            .where(
                BatchProcessingStatusModel.process_type == process_type,
                BatchProcessingStatusModel.status != BatchStatus.RUNNING.value,
                owns_pending,
            )
            .order_by(BatchProcessingStatusModel.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return _batch_to_entity(model) if model else None


class QueueItemRepository(IQueueItemRepository):
    """SQLAlchemy implementation of QueueItem repository."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with session."""
        self.session = session

    async def add_many(self, items: list[QueueItem]) -> None:
        """Add queue items (caller is responsible for chunking)."""
        self.session.add_all(
            [
                BatchQueueItemModel(
                    id=item.id,
                    batch_id=item.batch_id,
                    item_id=item.item_id,
                    item_type=item.item_type,
                    status=item.status.value,
                    attempts=item.attempts,
                    max_attempts=item.max_attempts,
                    priority=item.priority,
                    metadata_=item.metadata,
                    error_message=item.error_message,
                    scheduled_at=item.scheduled_at,
                    processed_at=item.processed_at,
                    created_at=item.created_at,
                    updated_at=item.updated_at,
                )
                for item in items
            ]
        )
        await self.session.flush()

    async def get_by_id(self, queue_item_id: str) -> QueueItem | None:
        """Get a queue item by its row ID."""
        model = await self.session.get(
            BatchQueueItemModel, queue_item_id, populate_existing=True
        )
        return _item_to_entity(model) if model else None

    async def update(self, item: QueueItem) -> None:
        """Update an existing queue item."""
        model = await self.session.get(BatchQueueItemModel, item.id)
        if not model:
            raise EntityNotFoundException("QueueItem", item.id)

        model.status = item.status.value
        model.attempts = item.attempts
        model.max_attempts = item.max_attempts
        model.priority = item.priority
        model.metadata_ = item.metadata
        model.error_message = item.error_message
        model.scheduled_at = item.scheduled_at
        model.processed_at = item.processed_at
        model.updated_at = item.updated_at
        await self.session.flush()

    async def list_claimable(
        self, batch_id: str, now: datetime, limit: int = 10
    ) -> list[QueueItem]:
        """List PENDING items of a batch that are due at `now`."""
        stmt = (
            select(BatchQueueItemModel)
            .where(
                BatchQueueItemModel.batch_id == batch_id,
                BatchQueueItemModel.status == QueueItemStatus.PENDING.value,
                or_(
                    BatchQueueItemModel.scheduled_at.is_(None),
                    BatchQueueItemModel.scheduled_at <= now,
                ),
            )
            .order_by(
                BatchQueueItemModel.priority.desc(),
                BatchQueueItemModel.created_at.asc(),
            )
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [_item_to_entity(model) for model in result.scalars().all()]

    # Yo, this is the compare-and-swap claim! Two overlapping ticks (cron + manual
    # "tick" from the dashboard) may both SELECT the same candidate. Only one of them
    # gets rowcount == 1 here, the other one moves on to the next candidate.
    async def claim(self, queue_item_id: str, now: datetime) -> bool:
        """Atomically move one item PENDING → PROCESSING and bump attempts."""
        stmt = (
            update(BatchQueueItemModel)
            .where(
                BatchQueueItemModel.id == queue_item_id,
                BatchQueueItemModel.status == QueueItemStatus.PENDING.value,
            )
            .values(
                status=QueueItemStatus.PROCESSING.value,
                attempts=BatchQueueItemModel.attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_abandoned(
        self, batch_id: str, claimed_before: datetime
    ) -> list[QueueItem]:
        """List PROCESSING items of a batch last touched before `claimed_before`."""
        stmt = (
            select(BatchQueueItemModel)
            .where(
                BatchQueueItemModel.batch_id == batch_id,
                BatchQueueItemModel.status == QueueItemStatus.PROCESSING.value,
                BatchQueueItemModel.updated_at < claimed_before,
            )
            .order_by(BatchQueueItemModel.updated_at.asc())
        )
        result = await self.session.execute(stmt)
        return [_item_to_entity(model) for model in result.scalars().all()]

    async def count_by_status(self, batch_id: str) -> dict[str, int]:
        """Count a batch's items grouped by status."""
        stmt = (
            select(BatchQueueItemModel.status, func.count(BatchQueueItemModel.id))
            .where(BatchQueueItemModel.batch_id == batch_id)
            .group_by(BatchQueueItemModel.status)
        )
        result = await self.session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def list_orphaned_pending(self, item_types: list[str]) -> list[QueueItem]:
        """List PENDING items of the given item types whose batch record doesn't exist."""
        if not item_types:
            return []
        batch_exists = exists().where(
            BatchProcessingStatusModel.id == BatchQueueItemModel.batch_id
        )
        stmt = (
            select(BatchQueueItemModel)
            .where(
                BatchQueueItemModel.status == QueueItemStatus.PENDING.value,
                BatchQueueItemModel.item_type.in_(item_types),
                ~batch_exists,
            )
            .order_by(BatchQueueItemModel.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return [_item_to_entity(model) for model in result.scalars().all()]

    async def list_failed(
        self, process_type: str, item_types: list[str]
    ) -> list[QueueItem]:
        """List FAILED items of the given item types owned by batches of `process_type`."""
        if not item_types:
            return []
        stmt = (
            select(BatchQueueItemModel)
            .join(
                BatchProcessingStatusModel,
                BatchProcessingStatusModel.id == BatchQueueItemModel.batch_id,
            )
            .where(
                BatchProcessingStatusModel.process_type == process_type,
                BatchQueueItemModel.status == QueueItemStatus.FAILED.value,
                BatchQueueItemModel.item_type.in_(item_types),
            )
            .order_by(BatchQueueItemModel.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return [_item_to_entity(model) for model in result.scalars().all()]


def create_repository_scope(db: Database) -> RepositoryScope:
    """Bind both repositories to one `Database.session_scope()` transaction per call.

    Example:
        scope = create_repository_scope(db)
        async with scope() as repos:
            batch = await repos.batches.find_running("blog_generation")
    """

    @asynccontextmanager
    async def scope() -> AsyncGenerator[BatchQueueRepositories, None]:
        async with db.session_scope() as session:
            yield BatchQueueRepositories(
                batches=BatchRecordRepository(session),
                items=QueueItemRepository(session),
            )

    return scope
