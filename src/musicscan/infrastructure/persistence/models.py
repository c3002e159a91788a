"""SQLAlchemy ORM models for the MusicScan batch queue."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from musicscan.domain.entities import utc_now


# Hey future me - SQLite doesn't preserve timezone info! UTC datetimes come back "naive".
# ALWAYS run DB datetimes through this before comparing them with datetime.now(UTC),
# otherwise: "can't compare offset-naive and offset-aware datetimes".
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class Base(DeclarativeBase):
    """Base class for all ORM models.

    All models inherit from this to use the same metadata registry.
    """

    # timestamp WITH time zone on PostgreSQL (asyncpg rejects aware datetimes otherwise)
    type_annotation_map = {datetime: DateTime(timezone=True)}


class BatchProcessingStatusModel(Base):
    """SQLAlchemy model for BatchRecord entity.

    One row per batch run of a process type (blog_generation,
    composer_story_generation, artist_stories, ...). Rows are never deleted by
    the batch queue - they are the audit trail of every run.
    """

    __tablename__ = "batch_processing_status"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    process_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_items: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_heartbeat: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index(
            "ix_batch_processing_status_type_status_created",
            "process_type",
            "status",
            "created_at",
        ),
    )


# Hey future me - batch_id is NOT a ForeignKey! A batch row deleted by hand must
# leave its items behind, otherwise the recovery sweep can never report them as
# orphans. The tick handler detects "item points at a missing batch" itself.
class BatchQueueItemModel(Base):
    """SQLAlchemy model for QueueItem entity.

    Claim query (one per tick):
    SELECT * FROM batch_queue_items
    WHERE batch_id = :batch AND status = 'pending' AND scheduled_at <= NOW()
    ORDER BY priority DESC, created_at ASC
    """

    __tablename__ = "batch_queue_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    item_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # "metadata" is reserved on DeclarativeBase, so the attribute gets a trailing underscore
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        Index(
            "ix_batch_queue_items_claim",
            "batch_id",
            "status",
            "priority",
            "created_at",
        ),
        Index("ix_batch_queue_items_type_status", "item_type", "status"),
    )
