"""API schemas for the batch queue endpoints.

Hey future me - the trigger endpoint speaks camelCase (itemId, resetCount, ...)
because that is what the admin dashboard and the cron job send and read.
Request models accept both camelCase and snake_case (populate_by_name),
responses are dumped by alias.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from musicscan.application.workers.batch_queue_processor import StartResult
from musicscan.domain.entities import BatchRecord, BatchStatusReport, TickResult

BatchAction = Literal["tick", "status", "retry_failed", "start"]


class StartItem(BaseModel):
    """One item to enqueue with the start action."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    item_id: str | None = Field(default=None, alias="itemId")
    item_type: str | None = Field(default=None, alias="itemType")
    priority: int | None = Field(default=None, description="Higher runs first")
    max_attempts: int | None = Field(default=None, alias="maxAttempts", ge=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class BatchActionRequest(BaseModel):
    """Body of POST /api/batch/{process_type}/tick. Missing body means tick."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: BatchAction = "tick"
    reset_attempts: bool = Field(default=True, alias="resetAttempts")
    items: list[StartItem] = Field(default_factory=list)
    dry_run: bool = Field(default=False, alias="dryRun")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self, exclude_none: bool = True) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


class TickResponse(_CamelModel):
    """Result of one tick."""

    message: str
    outcome: str
    item_id: str | None = Field(default=None, alias="itemId")
    item_type: str | None = Field(default=None, alias="itemType")
    item_outcome: str | None = Field(default=None, alias="itemOutcome")
    batch_id: str | None = Field(default=None, alias="batchId")
    # Not "error" - that key is reserved for failed requests ({"error": ...} bodies)
    error_message: str | None = Field(default=None, alias="errorMessage")
    orphaned_count: int | None = Field(default=None, alias="orphanedCount")

    @classmethod
    def from_result(cls, result: TickResult) -> "TickResponse":
        return cls(
            message=result.message,
            outcome=result.outcome.value,
            item_id=result.item_id,
            item_type=result.item_type,
            item_outcome=result.item_outcome.value if result.item_outcome else None,
            batch_id=result.batch_id,
            error_message=result.error_message,
            orphaned_count=result.orphaned_count or None,
        )


class BatchRecordSchema(BaseModel):
    """Batch record as shown by the status query."""

    id: str
    process_type: str
    status: str
    total_items: int
    processed_items: int
    successful_items: int
    failed_items: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_heartbeat: datetime | None = None
    created_at: datetime
    updated_at: datetime
    current_items: dict[str, Any] | None = None

    @classmethod
    def from_entity(cls, batch: BatchRecord) -> "BatchRecordSchema":
        return cls(
            id=batch.id,
            process_type=batch.process_type,
            status=batch.status.value,
            total_items=batch.total_items,
            processed_items=batch.processed_items,
            successful_items=batch.successful_items,
            failed_items=batch.failed_items,
            started_at=batch.started_at,
            completed_at=batch.completed_at,
            last_heartbeat=batch.last_heartbeat,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
            current_items=batch.current_items,
        )


class BatchStatusResponse(_CamelModel):
    """Latest batch plus queue stats."""

    message: str
    process_type: str
    batch: BatchRecordSchema | None
    queue_stats: dict[str, int]
    heartbeat_age_seconds: float | None
    is_stale: bool

    @classmethod
    def from_report(cls, report: BatchStatusReport) -> "BatchStatusResponse":
        if report.batch is None:
            message = f"No {report.process_type} batch found"
        else:
            message = f"Batch {report.batch.id} is {report.batch.status.value}"
        return cls(
            message=message,
            process_type=report.process_type,
            batch=BatchRecordSchema.from_entity(report.batch) if report.batch else None,
            queue_stats=report.queue_stats.to_dict(),
            heartbeat_age_seconds=report.heartbeat_age_seconds,
            is_stale=report.is_stale,
        )


class RetryFailedResponse(_CamelModel):
    """Result of the retry_failed action."""

    message: str
    reset_count: int = Field(alias="resetCount")


class StartResponse(_CamelModel):
    """Result of the start action."""

    message: str
    batch_id: str | None = Field(default=None, alias="batchId")
    total_items: int = Field(alias="totalItems")
    dry_run: bool | None = Field(default=None, alias="dryRun")
    items: list[dict[str, Any]] | None = None

    @classmethod
    def from_result(cls, result: StartResult) -> "StartResponse":
        return cls(
            message=result.message,
            batch_id=result.batch_id,
            total_items=result.total_items,
            dry_run=result.dry_run or None,
            items=result.items or None,
        )


class ProcessTypesResponse(BaseModel):
    """Registered process types."""

    process_types: list[str]
