"""Infrastructure persistence layer."""

from .database import Database
from .models import (
    BatchProcessingStatusModel,
    BatchQueueItemModel,
    Base,
    ensure_utc_aware,
)
from .repositories import (
    BatchRecordRepository,
    QueueItemRepository,
    create_repository_scope,
)
from .retry import DatabaseLockMetrics, is_lock_error, with_db_retry

__all__ = [
    "Base",
    "BatchProcessingStatusModel",
    "BatchQueueItemModel",
    "BatchRecordRepository",
    "Database",
    "DatabaseLockMetrics",
    "QueueItemRepository",
    "create_repository_scope",
    "ensure_utc_aware",
    "is_lock_error",
    "with_db_retry",
]
