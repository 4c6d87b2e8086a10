"""Durable run status, checkpoint, cumulative metrics and error log."""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_sync.clock import Clock
from booking_sync.infrastructure.database.connection import session_scope
from booking_sync.infrastructure.database.models import (
    SINGLETON_ID,
    SyncErrorRecord,
    SyncMetrics,
    SyncRunStatus,
    SyncState,
)
from booking_sync.services.results import SyncStats

logger = structlog.get_logger()

HEALTHY_THRESHOLD = 90
DEGRADED_THRESHOLD = 50


def classify_health(metrics: Optional[SyncMetrics]) -> str:
    """healthy >= 90% successful runs, degraded >= 50%, otherwise failing."""
    if metrics is None or not metrics.total_syncs:
        return "unknown"
    rate = metrics.success_rate
    if rate >= HEALTHY_THRESHOLD:
        return "healthy"
    if rate >= DEGRADED_THRESHOLD:
        return "degraded"
    return "failing"


class SyncStateStore:
    """Reads and writes the singleton sync_state and sync_metrics rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock):
        self.session_factory = session_factory
        self.clock = clock
        self._initialized = False

    async def _ensure_rows(self) -> None:
        if self._initialized:
            return
        for model in (SyncState, SyncMetrics):
            try:
                async with session_scope(self.session_factory) as session:
                    if await session.get(model, SINGLETON_ID) is None:
                        session.add(model(id=SINGLETON_ID))
            except IntegrityError:
                # Created concurrently by another process
                pass
        self._initialized = True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_state(self) -> SyncState:
        await self._ensure_rows()
        async with self.session_factory() as session:
            return await session.get(SyncState, SINGLETON_ID)

    async def get_metrics(self) -> SyncMetrics:
        await self._ensure_rows()
        async with self.session_factory() as session:
            return await session.get(SyncMetrics, SINGLETON_ID)

    async def get_checkpoint(self) -> Optional[datetime]:
        state = await self.get_state()
        return state.last_sync_time

    async def recent_errors(self, limit: int = 10) -> list[SyncErrorRecord]:
        query = select(SyncErrorRecord).order_by(SyncErrorRecord.occurred_at.desc()).limit(limit)
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    async def start_run(self, run_id: str) -> None:
        """Transition to running and reset the per-run counters."""
        await self._ensure_rows()
        now = self.clock.now()
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(SyncState)
                .where(SyncState.id == SINGLETON_ID)
                .values(
                    status=SyncRunStatus.RUNNING.value,
                    run_id=run_id,
                    started_at=now,
                    completed_at=None,
                    orders_checked=0,
                    orders_processed=0,
                    orders_successful=0,
                    orders_failed=0,
                    orders_skipped=0,
                    error_message=None,
                )
            )
        logger.info("Sync run started", run_id=run_id)

    async def save_checkpoint(
        self,
        last_sync_time: datetime,
        last_order_id: Optional[str] = None,
        orders_processed: Optional[int] = None,
    ) -> None:
        await self._ensure_rows()
        values: dict = {"last_sync_time": last_sync_time}
        if last_order_id is not None:
            values["last_order_id"] = last_order_id
        if orders_processed is not None:
            values["orders_processed"] = orders_processed
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(SyncState).where(SyncState.id == SINGLETON_ID).values(**values)
            )

    async def complete_run(self, run_id: str, stats: SyncStats) -> bool:
        """Write the final counters and status if ``run_id`` is still the running run.

        Returns False when the run was already closed (e.g. failed by the
        deadline), in which case metrics are left untouched.
        """
        await self._ensure_rows()
        status = SyncRunStatus.FAILED if stats.orders_failed else SyncRunStatus.COMPLETED
        completed_at = stats.completed_at or self.clock.now()
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                update(SyncState)
                .where(
                    SyncState.id == SINGLETON_ID,
                    SyncState.run_id == run_id,
                    SyncState.status == SyncRunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    completed_at=completed_at,
                    orders_checked=stats.orders_checked,
                    orders_processed=stats.orders_processed,
                    orders_successful=stats.orders_successful,
                    orders_failed=stats.orders_failed,
                    orders_skipped=stats.orders_skipped,
                    error_message=(
                        f"{stats.orders_failed} order(s) failed" if stats.orders_failed else None
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            closed = result.rowcount == 1

        if not closed:
            logger.warning("Run already closed, discarding late completion", run_id=run_id)
            return False

        await self._apply_metrics(
            success=not stats.orders_failed,
            orders=stats.orders_processed,
            successful_orders=stats.orders_successful,
            failed_orders=stats.orders_failed,
            duration_ms=stats.duration_ms,
        )
        return True

    async def fail_run(self, run_id: str, error: str) -> bool:
        """Mark the running run failed. Returns False if it was already closed."""
        await self._ensure_rows()
        now = self.clock.now()
        async with session_scope(self.session_factory) as session:
            state = await session.get(SyncState, SINGLETON_ID)
            if state.run_id != run_id or state.status != SyncRunStatus.RUNNING.value:
                return False
            result = await session.execute(
                update(SyncState)
                .where(
                    SyncState.id == SINGLETON_ID,
                    SyncState.run_id == run_id,
                    SyncState.status == SyncRunStatus.RUNNING.value,
                )
                .values(
                    status=SyncRunStatus.FAILED.value,
                    completed_at=now,
                    error_message=error,
                )
                .execution_options(synchronize_session=False)
            )
            closed = result.rowcount == 1
            started_at = state.started_at

        if closed:
            duration_ms = int((now - started_at).total_seconds() * 1000) if started_at else 0
            await self._apply_metrics(success=False, duration_ms=duration_ms)
        return closed

    # -------------------------------------------------------------------------
    # Metrics and errors
    # -------------------------------------------------------------------------

    async def _apply_metrics(
        self,
        success: bool,
        orders: int = 0,
        successful_orders: int = 0,
        failed_orders: int = 0,
        duration_ms: int = 0,
    ) -> None:
        now = self.clock.now()
        async with session_scope(self.session_factory) as session:
            metrics = await session.get(SyncMetrics, SINGLETON_ID, with_for_update=True)
            metrics.total_syncs += 1
            if success:
                metrics.successful_syncs += 1
            else:
                metrics.failed_syncs += 1
            metrics.total_orders += orders
            metrics.successful_orders += successful_orders
            metrics.failed_orders += failed_orders
            metrics.last_sync_at = now
            metrics.last_sync_duration_ms = duration_ms
            if metrics.average_sync_duration_ms is None:
                metrics.average_sync_duration_ms = duration_ms
            else:
                metrics.average_sync_duration_ms = round(
                    (metrics.average_sync_duration_ms * (metrics.total_syncs - 1) + duration_ms)
                    / metrics.total_syncs
                )

    async def record_error(
        self,
        context: str,
        error: str,
        details: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> None:
        async with session_scope(self.session_factory) as session:
            session.add(
                SyncErrorRecord(
                    context=context,
                    run_id=run_id,
                    error=error,
                    details=details,
                    occurred_at=self.clock.now(),
                )
            )
