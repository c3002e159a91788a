"""Shared fixtures for the batch queue tests."""

import pytest
from batch_fakes import FakeClock, InMemoryBatchQueueStore, ScriptedWorker

from musicscan.application.workers.batch_queue_processor import BatchQueueProcessor
from musicscan.application.workers.registry import WorkerRegistry
from musicscan.config.settings import BatchSettings


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at T0 until a test advances it."""
    return FakeClock()


@pytest.fixture
def store() -> InMemoryBatchQueueStore:
    return InMemoryBatchQueueStore()


@pytest.fixture
def worker() -> ScriptedWorker:
    """Worker for process type "demo" (item type "demo_item")."""
    return ScriptedWorker()


@pytest.fixture
def other_worker() -> ScriptedWorker:
    """Worker for process type "other" (item type "other_item")."""
    return ScriptedWorker(process_type="other", item_types=("other_item",))


@pytest.fixture
def batch_settings() -> BatchSettings:
    return BatchSettings(worker_timeout_seconds=5.0, insert_chunk_size=2)


@pytest.fixture
def processor(
    store: InMemoryBatchQueueStore,
    worker: ScriptedWorker,
    other_worker: ScriptedWorker,
    batch_settings: BatchSettings,
    clock: FakeClock,
) -> BatchQueueProcessor:
    return BatchQueueProcessor(
        repository_scope=store.scope,
        registry=WorkerRegistry([worker, other_worker]),
        settings=batch_settings,
        clock=clock,
    )
