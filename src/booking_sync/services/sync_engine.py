"""Sync engine: pulls orders since the checkpoint and drains the retry queue."""

from datetime import datetime, timedelta
from typing import Iterable, Optional
from uuid import uuid4

import structlog
from pydantic import ValidationError as PayloadValidationError

from booking_sync.clock import Clock, to_naive_utc
from booking_sync.collaborators import OrderSource
from booking_sync.exceptions import LockContentionError, OrderNotFoundError
from booking_sync.infrastructure.database.models import (
    FailureCategory,
    RetryEntry,
    RetryResolution,
)
from booking_sync.schemas import Order
from booking_sync.services.locking import PersistentLock, make_owner_token, order_scope
from booking_sync.services.order_processor import OrderProcessor
from booking_sync.services.processed_orders import ProcessedOrderLedger
from booking_sync.services.results import OrderResult, ProcessOptions, SyncStats
from booking_sync.services.retry_queue import RetryQueue
from booking_sync.services.sync_state import SyncStateStore

logger = structlog.get_logger()

SCHEDULED_SOURCE = "scheduled_sync"
MANUAL_SOURCE = "manual_sync"
RETRY_SOURCE = "retry_queue"


class SyncEngine:
    """Runs one full synchronization pass."""

    def __init__(
        self,
        order_source: OrderSource,
        processor: OrderProcessor,
        ledger: ProcessedOrderLedger,
        retry_queue: RetryQueue,
        state: SyncStateStore,
        lock: PersistentLock,
        clock: Clock,
        batch_size: int = 50,
        delay_between_orders: float = 1.0,
        overlap_minutes: int = 5,
        lookback_hours: int = 24,
        retry_batch_size: int = 10,
        order_lock_ttl: float = 300,
    ):
        self.order_source = order_source
        self.processor = processor
        self.ledger = ledger
        self.retry_queue = retry_queue
        self.state = state
        self.lock = lock
        self.clock = clock
        self.batch_size = max(batch_size, 1)
        self.delay_between_orders = delay_between_orders
        self.overlap = timedelta(minutes=overlap_minutes)
        self.lookback = timedelta(hours=lookback_hours)
        self.retry_batch_size = retry_batch_size
        self.order_lock_ttl = order_lock_ttl

    async def resolve_checkpoint(self, since: Optional[datetime] = None) -> datetime:
        """Explicit ``since``, else stored checkpoint minus the overlap, else the lookback window."""
        if since is not None:
            return to_naive_utc(since)
        stored = await self.state.get_checkpoint()
        if stored is not None:
            return stored - self.overlap
        return self.clock.now() - self.lookback

    async def run_full_sync(
        self, since: Optional[datetime] = None, run_id: Optional[str] = None
    ) -> SyncStats:
        """Synchronize new paid booking orders, then retry due failures.

        When ``run_id`` is given the caller has already marked the run as
        started; otherwise the engine starts and owns a run of its own.
        """
        if run_id is None:
            run_id = uuid4().hex
            await self.state.start_run(run_id)

        stats = SyncStats(run_id=run_id, started_at=self.clock.now())
        log = logger.bind(run_id=run_id)
        owner = make_owner_token()

        checkpoint = await self.resolve_checkpoint(since)
        stats.checkpoint = checkpoint
        log.info("Fetching orders", since=checkpoint.isoformat())

        orders = await self.order_source.fetch_orders_since(
            checkpoint, filters={"financial_status": "paid"}
        )
        stats.orders_checked = len(orders)

        order_ids = [order.id for order in orders]
        already_processed = await self.ledger.processed_ids(order_ids)
        already_queued = await self.retry_queue.queued_ids(order_ids)
        candidates = [
            order
            for order in orders
            if order.is_paid
            and order.id not in already_processed
            and order.id not in already_queued
            and self.processor.is_booking_order(order)
        ]
        log.info("Orders fetched", fetched=len(orders), to_process=len(candidates))

        options = ProcessOptions(queue_on_failure=True, sync_source=SCHEDULED_SOURCE)
        for start in range(0, len(candidates), self.batch_size):
            batch_orders = candidates[start : start + self.batch_size]
            batch = await self.processor.process_batch(
                batch_orders, options, self.delay_between_orders, owner
            )
            stats.add_batch(batch)

            last = batch_orders[-1]
            await self.state.save_checkpoint(
                self._order_time(last), last.id, stats.orders_processed
            )
            log.info(
                "Batch complete",
                batch=start // self.batch_size + 1,
                successful=batch.successful,
                failed=batch.failed,
                skipped=batch.skipped,
            )

        if orders and not candidates:
            await self.state.save_checkpoint(self._order_time(orders[-1]), orders[-1].id)

        await self._drain_retries(stats, owner)

        stats.completed_at = self.clock.now()
        await self.state.complete_run(run_id, stats)
        log.info("Sync finished", **stats.summary())
        return stats

    def _order_time(self, order: Order) -> datetime:
        stamp = order.updated_at or order.created_at
        return to_naive_utc(stamp) if stamp is not None else self.clock.now()

    async def sync_order(
        self, order_id: str, options: Optional[ProcessOptions] = None
    ) -> OrderResult:
        """Synchronize one order on demand.

        Raises:
            OrderNotFoundError: if the storefront does not know the order
            LockContentionError: if the order is being synchronized elsewhere
        """
        options = options or ProcessOptions(sync_source=MANUAL_SOURCE)
        order = await self.order_source.fetch_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        async with self.lock.hold(order_scope(order.id), make_owner_token(), self.order_lock_ttl):
            return await self.processor.process_order(order, options)

    async def retry_orders(self, order_ids: Optional[Iterable[str]] = None) -> SyncStats:
        """Retry queued orders now.

        Without ``order_ids`` only due entries are retried. Named orders are
        retried regardless of their schedule, exhausted ones included.
        """
        stats = SyncStats(started_at=self.clock.now())
        await self._drain_retries(stats, make_owner_token(), order_ids)
        stats.completed_at = self.clock.now()
        return stats

    async def _drain_retries(
        self,
        stats: SyncStats,
        owner: str,
        order_ids: Optional[Iterable[str]] = None,
    ) -> None:
        if order_ids is None:
            entries = await self.retry_queue.dequeue_ready(self.retry_batch_size)
        else:
            entries = []
            for order_id in order_ids:
                entry = await self.retry_queue.get(order_id)
                if entry is not None and entry.resolved_at is None:
                    entries.append(entry)

        if not entries:
            return
        logger.info("Retrying queued orders", count=len(entries))

        for entry in entries:
            stats.retries_attempted += 1
            if await self._retry_entry(entry, owner):
                stats.retries_successful += 1
            else:
                stats.retries_failed += 1

    async def _retry_entry(self, entry: RetryEntry, owner: str) -> bool:
        try:
            order = Order.model_validate(RetryQueue.payload(entry))
        except (PayloadValidationError, ValueError) as e:
            logger.error("Unreadable retry payload", order_id=entry.order_id, error=str(e))
            await self.retry_queue.resolve(entry.order_id, RetryResolution.INVALID)
            return False

        options = ProcessOptions(force=True, sync_source=RETRY_SOURCE)
        try:
            async with self.lock.hold(order_scope(order.id), owner, self.order_lock_ttl):
                result = await self.processor.process_order(order, options)
        except LockContentionError:
            logger.info("Queued order busy, leaving for next run", order_id=entry.order_id)
            return False
        except Exception as e:
            logger.error("Retry error", order_id=entry.order_id, error=str(e))
            await self.retry_queue.record_failure(entry.order_id, str(e))
            return False

        if result.success:
            await self.retry_queue.record_success(entry.order_id)
            return True
        if result.category is FailureCategory.VALIDATION:
            await self.retry_queue.resolve(entry.order_id, RetryResolution.INVALID)
            return False

        await self.retry_queue.record_failure(entry.order_id, "; ".join(result.errors))
        return False
