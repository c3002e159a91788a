"""Tests for BatchQueueProcessor - tick handler, recovery sweep and admin commands.

Hey future me - every test here runs against the in-memory store from batch_fakes.py
and a frozen clock. "Advance the clock" is how retries become due.
"""

import copy
from datetime import timedelta

import pytest
from batch_fakes import (
    T0,
    FakeClock,
    InMemoryBatchQueueStore,
    ScriptedWorker,
    make_batch,
    make_item,
)

from musicscan.application.workers.batch_queue_processor import (
    EXHAUSTED_ERROR_MESSAGE,
    BatchQueueProcessor,
)
from musicscan.application.workers.registry import WorkerRegistry
from musicscan.config.settings import BatchSettings
from musicscan.domain.entities import (
    ABANDONED_ERROR_MESSAGE,
    ORPHANED_ERROR_MESSAGE,
    BatchStatus,
    ItemOutcome,
    QueueItemStatus,
    TickOutcome,
)
from musicscan.domain.exceptions import (
    ConfigurationError,
    InvalidStateException,
    PoisonPayloadError,
    TransientWorkerError,
    ValidationException,
)


class TestTickOrdering:
    """Priority DESC, then created_at ASC."""

    async def test_highest_priority_first_then_oldest(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        """A(p1), B(p5), C(p1) created in that order → B, A, C."""
        batch = store.put_batch(make_batch(total_items=3))
        store.put_item(make_item(batch, "A", priority=1, created_at=T0))
        store.put_item(make_item(batch, "B", priority=5, created_at=T0 + timedelta(seconds=1)))
        store.put_item(make_item(batch, "C", priority=1, created_at=T0 + timedelta(seconds=2)))

        results = [await processor.tick("demo") for _ in range(3)]

        assert [r.item_id for r in results] == ["B", "A", "C"]
        assert worker.performed_item_ids == ["B", "A", "C"]
        assert all(r.item_outcome == ItemOutcome.COMPLETED for r in results)

    async def test_one_worker_call_per_tick(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=5))
        for i in range(5):
            store.put_item(make_item(batch, f"item-{i}"))

        await processor.tick("demo")

        assert len(worker.calls) == 1
        pending = [i for i in store.items.values() if i.status == QueueItemStatus.PENDING]
        assert len(pending) == 4

    async def test_drained_batch_completes_with_consistent_counters(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
        clock: FakeClock,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=2))
        store.put_item(make_item(batch, "good"))
        store.put_item(make_item(batch, "bad"))
        worker.script["bad"] = [PoisonPayloadError("INCOMPLETE_METADATA: no title")]

        await processor.tick("demo")
        await processor.tick("demo")
        clock.advance(minutes=1)
        final = await processor.tick("demo")

        assert final.outcome == TickOutcome.BATCH_COMPLETED
        done = store.batch(batch.id)
        assert done.status == BatchStatus.COMPLETED
        assert done.completed_at == clock.now
        assert done.processed_items == 2
        assert done.successful_items == 1
        assert done.failed_items == 1
        assert done.processed_items == done.successful_items + done.failed_items
        assert done.current_items is None

    async def test_tick_heartbeats_and_clears_current_items(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        clock: FakeClock,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        store.put_item(make_item(batch, "only"))
        clock.advance(minutes=3)

        await processor.tick("demo")

        saved = store.batch(batch.id)
        assert saved.last_heartbeat == clock.now
        assert saved.current_items is None

    async def test_pending_batch_is_started_by_first_tick(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        batch = store.put_batch(make_batch(status=BatchStatus.PENDING, total_items=1))
        store.put_item(make_item(batch, "first"))

        result = await processor.tick("demo")

        assert result.outcome == TickOutcome.ITEM_PROCESSED
        started = store.batch(batch.id)
        assert started.status == BatchStatus.RUNNING
        assert started.started_at == T0

    async def test_idle_when_nothing_to_do(
        self, processor: BatchQueueProcessor, worker: ScriptedWorker
    ) -> None:
        result = await processor.tick("demo")

        assert result.outcome == TickOutcome.IDLE
        assert result.message == "No active batch and no pending items"
        assert worker.calls == []

    async def test_unknown_process_type_raises(self, processor: BatchQueueProcessor) -> None:
        with pytest.raises(ConfigurationError):
            await processor.tick("nope")


class TestErrorHandling:
    """Poison fails immediately, transient retries with 5/10 minute backoff."""

    async def test_poison_payload_fails_on_first_attempt(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        item = store.put_item(make_item(batch, "cd-1"))
        worker.script["cd-1"] = [
            PoisonPayloadError(
                "INCOMPLETE_METADATA: artist missing", error_code="INCOMPLETE_METADATA"
            )
        ]

        result = await processor.tick("demo")

        assert result.item_outcome == ItemOutcome.FAILED
        failed = store.item(item.id)
        assert failed.status == QueueItemStatus.FAILED
        assert failed.attempts == 1
        assert "INCOMPLETE_METADATA" in (failed.error_message or "")
        assert store.batch(batch.id).failed_items == 1

    async def test_untyped_422_error_is_not_retried(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        item = store.put_item(make_item(batch, "x"))
        worker.script["x"] = [RuntimeError("upstream said HTTP 422 Unprocessable Entity")]

        result = await processor.tick("demo")

        assert result.item_outcome == ItemOutcome.FAILED
        assert store.item(item.id).attempts == 1

    async def test_transient_error_retries_with_backoff_until_exhausted(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
        clock: FakeClock,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        item = store.put_item(make_item(batch, "flaky", max_attempts=3))
        worker.script["flaky"] = [
            TransientWorkerError("rate limited", error_code="HTTP_429"),
            TransientWorkerError("rate limited", error_code="HTTP_429"),
            TransientWorkerError("rate limited", error_code="HTTP_429"),
        ]

        first = await processor.tick("demo")
        assert first.item_outcome == ItemOutcome.RETRY_SCHEDULED
        saved = store.item(item.id)
        assert saved.status == QueueItemStatus.PENDING
        assert saved.attempts == 1
        assert saved.scheduled_at == T0 + timedelta(minutes=5)
        assert saved.error_message == "HTTP_429: rate limited"

        # Not due yet → waiting, no worker call
        clock.advance(minutes=4)
        waiting = await processor.tick("demo")
        assert waiting.outcome == TickOutcome.WAITING
        assert len(worker.calls) == 1

        clock.advance(minutes=1)
        second = await processor.tick("demo")
        assert second.item_outcome == ItemOutcome.RETRY_SCHEDULED
        saved = store.item(item.id)
        assert saved.attempts == 2
        assert saved.scheduled_at == clock.now + timedelta(minutes=10)

        clock.advance(minutes=10)
        third = await processor.tick("demo")
        assert third.item_outcome == ItemOutcome.FAILED
        saved = store.item(item.id)
        assert saved.status == QueueItemStatus.FAILED
        assert saved.attempts == 3
        assert store.batch(batch.id).failed_items == 1

    async def test_unknown_exception_is_transient(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        store.put_item(make_item(batch, "boom"))
        worker.script["boom"] = [RuntimeError("connection reset by peer")]

        result = await processor.tick("demo")

        assert result.item_outcome == ItemOutcome.RETRY_SCHEDULED
        assert result.error_message == "connection reset by peer"
        # Retries aren't counted as processed
        assert store.batch(batch.id).processed_items == 0

    async def test_worker_timeout_is_transient(
        self,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
        clock: FakeClock,
    ) -> None:
        processor = BatchQueueProcessor(
            repository_scope=store.scope,
            registry=WorkerRegistry([worker]),
            settings=BatchSettings(worker_timeout_seconds=0.01),
            clock=clock,
        )
        worker.delay_seconds = 1.0
        batch = store.put_batch(make_batch(total_items=1))
        item = store.put_item(make_item(batch, "slow"))

        result = await processor.tick("demo")

        assert result.item_outcome == ItemOutcome.RETRY_SCHEDULED
        assert "timeout" in (result.error_message or "")
        assert store.item(item.id).status == QueueItemStatus.PENDING

    async def test_exhausted_pending_item_is_failed_and_skipped(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=2))
        stuck = store.put_item(make_item(batch, "stuck", priority=9, attempts=3, max_attempts=3))
        store.put_item(make_item(batch, "fresh", priority=1))

        result = await processor.tick("demo")

        assert result.item_id == "fresh"
        assert worker.performed_item_ids == ["fresh"]
        swept = store.item(stuck.id)
        assert swept.status == QueueItemStatus.FAILED
        assert swept.error_message == EXHAUSTED_ERROR_MESSAGE
        assert store.batch(batch.id).failed_items == 1


class TestClaimRace:
    async def test_lost_claim_moves_to_next_candidate(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=2))
        first = store.put_item(make_item(batch, "first", priority=5))
        store.put_item(make_item(batch, "second", priority=1))
        store.stolen_on_claim.add(first.id)

        result = await processor.tick("demo")

        assert result.item_id == "second"
        assert worker.performed_item_ids == ["second"]
        # The other ticker owns "first" now
        assert store.item(first.id).status == QueueItemStatus.PROCESSING
        assert store.item(first.id).attempts == 1

    async def test_processing_item_of_other_ticker_keeps_batch_open(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        store.put_item(make_item(batch, "busy", status=QueueItemStatus.PROCESSING, attempts=1))

        result = await processor.tick("demo")

        assert result.outcome == TickOutcome.WAITING
        assert store.batch(batch.id).status == BatchStatus.RUNNING


class TestAbandonedItems:
    """PROCESSING items left behind by a process that died between claim and outcome."""

    async def test_abandoned_item_is_requeued_and_processed(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
        clock: FakeClock,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        stuck = store.put_item(
            make_item(batch, "stuck", status=QueueItemStatus.PROCESSING, attempts=1)
        )
        clock.advance(hours=3)

        result = await processor.tick("demo")

        assert result.item_id == "stuck"
        assert result.item_outcome == ItemOutcome.COMPLETED
        assert worker.performed_item_ids == ["stuck"]
        assert store.item(stuck.id).attempts == 2

        done = await processor.tick("demo")
        assert done.outcome == TickOutcome.BATCH_COMPLETED
        assert store.batch(batch.id).successful_items == 1

    async def test_exhausted_abandoned_item_fails_and_batch_completes(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
        clock: FakeClock,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        stuck = store.put_item(
            make_item(batch, "stuck", status=QueueItemStatus.PROCESSING, attempts=3)
        )
        clock.advance(hours=3)

        result = await processor.tick("demo")

        assert result.outcome == TickOutcome.BATCH_COMPLETED
        assert worker.calls == []
        failed = store.item(stuck.id)
        assert failed.status == QueueItemStatus.FAILED
        assert failed.error_message == ABANDONED_ERROR_MESSAGE
        saved = store.batch(batch.id)
        assert saved.failed_items == 1
        assert saved.processed_items == 1

    async def test_claim_within_timeout_and_grace_is_left_alone(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        batch_settings: BatchSettings,
        clock: FakeClock,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=1))
        busy = store.put_item(
            make_item(batch, "busy", status=QueueItemStatus.PROCESSING, attempts=1)
        )
        clock.advance(
            seconds=batch_settings.worker_timeout_seconds
            + batch_settings.abandoned_grace_seconds
        )

        result = await processor.tick("demo")

        assert result.outcome == TickOutcome.WAITING
        assert store.item(busy.id).status == QueueItemStatus.PROCESSING


class TestRecoverySweep:
    async def test_orphaned_pending_items_are_failed_without_worker_call(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        orphan = store.put_item(make_item("deleted-batch-id", "lost"))
        other_orphan = store.put_item(
            make_item("deleted-batch-id", "not-mine", item_type="other_item")
        )

        result = await processor.tick("demo")

        assert result.outcome == TickOutcome.ORPHANS_FAILED
        assert result.orphaned_count == 1
        assert worker.calls == []
        failed = store.item(orphan.id)
        assert failed.status == QueueItemStatus.FAILED
        assert failed.error_message == ORPHANED_ERROR_MESSAGE
        # Item types of other process types are left alone
        assert store.item(other_orphan.id).status == QueueItemStatus.PENDING

    async def test_stale_completed_batch_with_pending_items_is_reactivated(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = store.put_batch(make_batch(status=BatchStatus.COMPLETED, total_items=1))
        store.put_item(make_item(batch, "left-behind"))

        result = await processor.tick("demo")

        assert result.outcome == TickOutcome.ITEM_PROCESSED
        assert worker.performed_item_ids == ["left-behind"]
        assert store.batch(batch.id).status == BatchStatus.RUNNING

    async def test_other_process_type_is_never_touched(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
        other_worker: ScriptedWorker,
    ) -> None:
        other_batch = store.put_batch(make_batch(process_type="other", total_items=1))
        other_item = store.put_item(make_item(other_batch, "o1", item_type="other_item"))

        result = await processor.tick("demo")

        assert result.outcome == TickOutcome.IDLE
        assert worker.calls == []
        assert other_worker.calls == []
        assert store.item(other_item.id).status == QueueItemStatus.PENDING
        assert store.batch(other_batch.id).last_heartbeat == T0


class TestStatus:
    async def test_status_is_read_only_and_idempotent(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        batch = store.put_batch(make_batch(total_items=3))
        store.put_item(make_item(batch, "a"))
        store.put_item(make_item(batch, "b", status=QueueItemStatus.COMPLETED))
        store.put_item(make_item(batch, "c", status=QueueItemStatus.FAILED))
        before = copy.deepcopy((store.batches, store.items))

        first = await processor.status("demo")
        second = await processor.status("demo")

        assert first == second
        assert first.batch is not None and first.batch.id == batch.id
        assert first.queue_stats.to_dict() == {
            "pending": 1,
            "processing": 0,
            "completed": 1,
            "failed": 1,
        }
        assert (store.batches, store.items) == before

    async def test_status_without_batch(self, processor: BatchQueueProcessor) -> None:
        report = await processor.status("demo")

        assert report.batch is None
        assert report.queue_stats.open_items == 0
        assert report.is_stale is False

    async def test_running_batch_without_recent_heartbeat_is_stale(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        clock: FakeClock,
    ) -> None:
        store.put_batch(make_batch(total_items=1))
        clock.advance(minutes=16)

        report = await processor.status("demo")

        assert report.heartbeat_age_seconds == 16 * 60
        assert report.is_stale is True


class TestRetryFailed:
    async def test_full_reset_reactivates_completed_batch(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = make_batch(status=BatchStatus.COMPLETED, total_items=1)
        batch.processed_items = 1
        batch.failed_items = 1
        store.put_batch(batch)
        item = store.put_item(
            make_item(
                batch,
                "again",
                status=QueueItemStatus.FAILED,
                attempts=3,
                error_message="HTTP_500: boom",
            )
        )

        count = await processor.retry_failed("demo")

        assert count == 1
        reset = store.item(item.id)
        assert reset.status == QueueItemStatus.PENDING
        assert reset.attempts == 0
        assert reset.error_message is None
        released = store.batch(batch.id)
        assert released.processed_items == 0
        assert released.failed_items == 0

        result = await processor.tick("demo")
        assert result.item_outcome == ItemOutcome.COMPLETED
        assert worker.performed_item_ids == ["again"]

        done = await processor.tick("demo")
        assert done.outcome == TickOutcome.BATCH_COMPLETED
        final = store.batch(batch.id)
        assert (final.processed_items, final.successful_items, final.failed_items) == (1, 1, 0)

    async def test_without_attempts_reset_item_gets_exactly_one_more_try(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        batch = store.put_batch(make_batch(status=BatchStatus.COMPLETED, total_items=1))
        item = store.put_item(
            make_item(batch, "last-chance", status=QueueItemStatus.FAILED, attempts=3)
        )
        worker.script["last-chance"] = [TransientWorkerError("still down")]

        count = await processor.retry_failed("demo", reset_attempts=False)

        assert count == 1
        assert store.item(item.id).attempts == 2

        result = await processor.tick("demo")
        assert result.item_outcome == ItemOutcome.FAILED
        assert store.item(item.id).attempts == 3

    async def test_only_failed_items_of_own_process_type(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        mine = store.put_batch(make_batch(status=BatchStatus.COMPLETED))
        theirs = store.put_batch(make_batch(process_type="other", status=BatchStatus.COMPLETED))
        store.put_item(make_item(mine, "m", status=QueueItemStatus.FAILED, attempts=1))
        foreign = store.put_item(
            make_item(theirs, "t", item_type="other_item", status=QueueItemStatus.FAILED)
        )
        orphan = store.put_item(
            make_item("gone", "o", status=QueueItemStatus.FAILED, error_message=ORPHANED_ERROR_MESSAGE)
        )

        count = await processor.retry_failed("demo")

        assert count == 1
        assert store.item(foreign.id).status == QueueItemStatus.FAILED
        assert store.item(orphan.id).status == QueueItemStatus.FAILED


class TestStart:
    async def test_creates_pending_batch_and_items_in_chunks(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        result = await processor.start(
            "demo",
            [
                {"item_id": "a", "metadata": {"name": "A"}},
                {"item_id": "b", "priority": 5},
                {"item_id": "c"},
            ],
        )

        assert result.total_items == 3
        assert result.batch_id is not None
        batch = store.batch(result.batch_id)
        assert batch.status == BatchStatus.PENDING
        assert batch.total_items == 3
        assert len(store.items) == 3

        ticks = [await processor.tick("demo") for _ in range(3)]
        assert [t.item_id for t in ticks] == ["b", "a", "c"]
        assert worker.calls[1].metadata == {"name": "A"}

    async def test_rejects_second_batch_while_running(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        store.put_batch(make_batch())

        with pytest.raises(InvalidStateException):
            await processor.start("demo", [{"item_id": "x"}])

    async def test_rejects_second_start_before_first_tick(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        worker: ScriptedWorker,
    ) -> None:
        first = await processor.start("demo", [{"item_id": "album-1"}])

        with pytest.raises(InvalidStateException, match="already active"):
            await processor.start("demo", [{"item_id": "album-1"}])

        assert list(store.batches) == [first.batch_id]
        results = [await processor.tick("demo") for _ in range(3)]
        assert worker.performed_item_ids == ["album-1"]
        assert results[-1].outcome == TickOutcome.IDLE

    async def test_completed_batch_with_requeued_items_blocks_start(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        batch = store.put_batch(make_batch(status=BatchStatus.COMPLETED))
        store.put_item(make_item(batch, "requeued"))

        with pytest.raises(InvalidStateException):
            await processor.start("demo", [{"item_id": "x"}])

    async def test_new_batch_allowed_once_previous_finished(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        batch = store.put_batch(make_batch(status=BatchStatus.COMPLETED))
        store.put_item(make_item(batch, "done", status=QueueItemStatus.COMPLETED))

        result = await processor.start("demo", [{"item_id": "x"}])

        assert result.batch_id is not None
        assert result.batch_id != batch.id

    async def test_empty_input_creates_nothing(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        result = await processor.start("demo", [])

        assert result.message == "No items found to process"
        assert result.batch_id is None
        assert store.batches == {}

    async def test_dry_run_writes_nothing(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        items = [{"item_id": f"i{n}"} for n in range(12)]

        result = await processor.start("demo", items, dry_run=True)

        assert result.dry_run is True
        assert result.total_items == 12
        assert [p["item_id"] for p in result.items] == [f"i{n}" for n in range(10)]
        assert store.batches == {}
        assert store.items == {}

    async def test_generates_item_id_and_uses_default_attempts(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
    ) -> None:
        await processor.start("demo", [{"metadata": {"name": "no id"}}])

        (item,) = store.items.values()
        assert item.item_id
        assert item.item_type == "demo_item"
        assert item.max_attempts == 3
        assert item.scheduled_at == T0

    @pytest.mark.parametrize(
        "raw",
        [
            {"item_type": "other_item"},
            {"metadata": ["not", "a", "dict"]},
            {"priority": "high"},
            {"max_attempts": -1},
        ],
    )
    async def test_invalid_items_are_rejected(
        self,
        processor: BatchQueueProcessor,
        store: InMemoryBatchQueueStore,
        raw: dict,
    ) -> None:
        with pytest.raises(ValidationException):
            await processor.start("demo", [raw])
        assert store.batches == {}
