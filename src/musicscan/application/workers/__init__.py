"""Worker system - batch queue processing."""

from musicscan.application.workers.batch_queue_processor import (
    BatchQueueProcessor,
    StartResult,
)
from musicscan.application.workers.batch_tick_worker import (
    BatchTickWorker,
    create_batch_tick_worker,
)
from musicscan.application.workers.content_workers import (
    ArtistStoryWorker,
    BlogPostWorker,
    ComposerStoryWorker,
    create_content_workers,
)
from musicscan.application.workers.registry import WorkerRegistry

__all__ = [
    "ArtistStoryWorker",
    "BatchQueueProcessor",
    "BatchTickWorker",
    "BlogPostWorker",
    "ComposerStoryWorker",
    "StartResult",
    "WorkerRegistry",
    "create_batch_tick_worker",
    "create_content_workers",
]
