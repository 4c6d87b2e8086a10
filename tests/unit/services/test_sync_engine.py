"""Unit tests for the sync engine."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from booking_sync.exceptions import LockContentionError, OrderNotFoundError, TransientError
from booking_sync.infrastructure.database.models import FailureCategory
from booking_sync.services.sync_engine import SyncEngine

MANILA = ZoneInfo("Asia/Manila")


@pytest.fixture
def engine(container) -> SyncEngine:
    return container.engine


def block_studio_a(calendar) -> None:
    calendar.add_event(
        "Studio A - Jane",
        datetime(2025, 3, 10, 10, 30, tzinfo=MANILA),
        datetime(2025, 3, 10, 11, 0, tzinfo=MANILA),
    )


class TestOnDemandSync:
    @pytest.mark.asyncio
    async def test_order_synchronized_exactly_once(
        self, engine: SyncEngine, container, order_source, calendar, make_order
    ) -> None:
        order_source.add(make_order("1001"))

        first = await engine.sync_order("1001")
        second = await engine.sync_order("1001")

        assert first.success and not first.skipped
        assert second.success and second.skipped
        assert len(calendar.created) == 1
        record = await container.ledger.get("1001")
        assert record.sync_source == "manual_sync"
        assert record.calendar_event_id == first.bookings[0].calendar_event_id

    @pytest.mark.asyncio
    async def test_unknown_order(self, engine: SyncEngine) -> None:
        with pytest.raises(OrderNotFoundError):
            await engine.sync_order("missing")

    @pytest.mark.asyncio
    async def test_busy_order(self, engine: SyncEngine, container, order_source, make_order) -> None:
        order_source.add(make_order("1001"))
        await container.lock.acquire("order:1001", "scheduled-run", ttl=300)

        with pytest.raises(LockContentionError):
            await engine.sync_order("1001")

    @pytest.mark.asyncio
    async def test_order_lock_released_afterwards(
        self, engine: SyncEngine, container, order_source, make_order
    ) -> None:
        order_source.add(make_order("1001"))
        await engine.sync_order("1001")

        assert not await container.lock.is_held("order:1001")


class TestFullSync:
    @pytest.mark.asyncio
    async def test_processes_new_paid_booking_orders(
        self, engine: SyncEngine, container, order_source, calendar, make_order
    ) -> None:
        order_source.add(
            make_order("1", product="Studio A"),
            make_order("2", product="Studio B"),
            make_order("3", product="Studio C"),
            make_order("4", financial_status="pending"),
            make_order("5", line_items=[]),
        )

        stats = await engine.run_full_sync()

        assert stats.orders_checked == 5
        assert stats.orders_processed == 3
        assert stats.orders_successful == 3
        assert stats.orders_failed == 0
        assert len(calendar.created) == 3
        state = await container.state.get_state()
        assert state.status == "completed"
        assert state.orders_successful == 3
        assert (await container.state.get_metrics()).total_syncs == 1

    @pytest.mark.asyncio
    async def test_processed_orders_are_filtered(
        self, engine: SyncEngine, order_source, calendar, make_order
    ) -> None:
        order_source.add(make_order("1"))
        await engine.run_full_sync()

        stats = await engine.run_full_sync()

        assert stats.orders_checked == 1
        assert stats.orders_processed == 0
        assert len(calendar.created) == 1

    @pytest.mark.asyncio
    async def test_first_run_uses_lookback_window(self, engine: SyncEngine, order_source, clock) -> None:
        await engine.run_full_sync()

        assert order_source.fetch_calls == [clock.now() - timedelta(hours=24)]

    @pytest.mark.asyncio
    async def test_explicit_since_wins(self, engine: SyncEngine, order_source) -> None:
        since = datetime(2025, 2, 1, 8, 0, tzinfo=MANILA)

        await engine.run_full_sync(since=since)

        assert order_source.fetch_calls == [datetime(2025, 2, 1, 0, 0)]

    @pytest.mark.asyncio
    async def test_checkpoint_advances_to_last_order(
        self, engine: SyncEngine, container, order_source, make_order, clock
    ) -> None:
        base = clock.now() - timedelta(hours=3)
        order_source.add(
            make_order("1", product="Studio A", updated_at=base),
            make_order("2", product="Studio B", updated_at=base + timedelta(minutes=10)),
            make_order("3", product="Studio C", updated_at=base + timedelta(minutes=20)),
        )

        await engine.run_full_sync()

        state = await container.state.get_state()
        assert state.last_sync_time == base + timedelta(minutes=20)
        assert state.last_order_id == "3"

        await engine.run_full_sync()
        assert order_source.fetch_calls[-1] == base + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_failed_orders_mark_run_failed(
        self, engine: SyncEngine, container, order_source, calendar, make_order
    ) -> None:
        block_studio_a(calendar)
        order_source.add(make_order("1001"))

        stats = await engine.run_full_sync()

        assert stats.orders_failed == 1
        assert (await container.state.get_state()).status == "failed"
        metrics = await container.state.get_metrics()
        assert metrics.failed_syncs == 1
        assert metrics.failed_orders == 1

    @pytest.mark.asyncio
    async def test_unexpected_order_error_does_not_abort_run(
        self, engine: SyncEngine, container, order_source, make_order, monkeypatch
    ) -> None:
        order_source.add(make_order("1", product="Studio A"), make_order("2", product="Studio B"))
        original = container.processor.process_order

        async def flaky(order, options=None):
            if order.id == "1":
                raise RuntimeError("database hiccup")
            return await original(order, options)

        monkeypatch.setattr(container.processor, "process_order", flaky)

        stats = await engine.run_full_sync()

        assert stats.orders_failed == 1
        assert stats.orders_successful == 1
        entry = await container.retry_queue.get("1")
        assert entry.failure_category == "transient"
        assert entry.failure_reason == "database hiccup"

    @pytest.mark.asyncio
    async def test_failed_ledger_write_is_rolled_back_and_retried(
        self, engine: SyncEngine, container, order_source, calendar, make_order, clock, monkeypatch
    ) -> None:
        order_source.add(
            make_order("1", product="Studio A", updated_at=clock.now() - timedelta(hours=2)),
            make_order("2", product="Studio B", updated_at=clock.now() - timedelta(minutes=90)),
        )
        original = container.ledger.record
        failures = []

        async def flaky_record(**kwargs):
            if kwargs["order_id"] == "1" and not failures:
                failures.append(kwargs["order_id"])
                raise RuntimeError("connection reset")
            return await original(**kwargs)

        monkeypatch.setattr(container.ledger, "record", flaky_record)

        first = await engine.run_full_sync()

        assert first.orders_failed == 1
        assert first.orders_successful == 1
        assert not await container.ledger.is_processed("1")
        assert [e.metadata["order_id"] for e in calendar.events.values()] == ["2"]
        entry = await container.retry_queue.get("1")
        assert entry.failure_category == "transient"
        assert "connection reset" in entry.failure_reason

        clock.advance(3600)
        second = await engine.run_full_sync()

        assert second.retries_successful == 1
        assert await container.ledger.is_processed("1")
        assert sorted(e.metadata["order_id"] for e in calendar.events.values()) == ["1", "2"]
        assert (await container.retry_queue.get("1")).resolution == "success"


class TestConflictRetries:
    @pytest.mark.asyncio
    async def test_conflict_is_queued_and_eventually_exhausted(
        self, engine: SyncEngine, container, order_source, calendar, make_order, clock
    ) -> None:
        block_studio_a(calendar)
        order_source.add(make_order("1001"))

        stats = await engine.run_full_sync()

        assert stats.orders_failed == 1
        entry = await container.retry_queue.get("1001")
        assert entry.retry_count == 0
        assert entry.failure_category == FailureCategory.CONFLICT.value
        delay = (entry.next_retry_at - clock.now()).total_seconds()
        assert 60 <= delay <= 78

        for attempt in range(1, 6):
            clock.advance(3600)
            retried = await engine.retry_orders()
            assert retried.retries_failed == 1
            assert (await container.retry_queue.get("1001")).retry_count == attempt

        entry = await container.retry_queue.get("1001")
        assert entry.exhausted
        assert entry.resolved_at is None
        clock.advance(2 * 86400)
        assert await container.retry_queue.dequeue_ready() == []
        assert calendar.created == []

    @pytest.mark.asyncio
    async def test_queued_order_is_not_reprocessed_by_full_sync(
        self, engine: SyncEngine, container, order_source, calendar, make_order
    ) -> None:
        block_studio_a(calendar)
        order_source.add(make_order("1001"))
        await engine.run_full_sync()

        stats = await engine.run_full_sync(since=datetime(2025, 1, 1))

        assert stats.orders_processed == 0
        assert (await container.retry_queue.get("1001")).retry_count == 0

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_on_retry(
        self, engine: SyncEngine, container, order_source, calendar, make_order, clock
    ) -> None:
        order_source.add(make_order("1001"))
        calendar.create_errors[1] = TransientError("calendar timeout")
        await engine.run_full_sync()

        clock.advance(79)
        stats = await engine.run_full_sync()

        assert stats.retries_attempted == 1
        assert stats.retries_successful == 1
        entry = await container.retry_queue.get("1001")
        assert entry.resolution == "success"
        record = await container.ledger.get("1001")
        assert record.sync_source == "retry_queue"
        assert len(calendar.events) == 1

    @pytest.mark.asyncio
    async def test_past_dated_retry_is_resolved_invalid(
        self, engine: SyncEngine, container, order_source, calendar, make_order, clock
    ) -> None:
        block_studio_a(calendar)
        order_source.add(make_order("1001"))
        await engine.run_full_sync()

        clock.advance(30 * 86400)
        stats = await engine.retry_orders()

        assert stats.retries_failed == 1
        entry = await container.retry_queue.get("1001")
        assert entry.resolution == "invalid"
        assert entry.resolved_at is not None

    @pytest.mark.asyncio
    async def test_unreadable_payload_is_resolved_invalid(
        self, engine: SyncEngine, container, clock
    ) -> None:
        await container.retry_queue.enqueue("broken", {"line_items": "nope"}, "boom")
        clock.advance(100)

        await engine.retry_orders()

        assert (await container.retry_queue.get("broken")).resolution == "invalid"

    @pytest.mark.asyncio
    async def test_named_orders_retry_regardless_of_schedule(
        self, engine: SyncEngine, container, order_source, calendar, make_order
    ) -> None:
        block_studio_a(calendar)
        order_source.add(make_order("1001"))
        await engine.run_full_sync()
        calendar.events.clear()

        stats = await engine.retry_orders(["1001"])

        assert stats.retries_successful == 1
        assert await container.ledger.is_processed("1001")
