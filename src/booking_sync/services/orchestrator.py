"""Orchestrated sync runs and the periodic scheduler."""

import asyncio
import traceback
from typing import Any, Optional
from uuid import uuid4

import structlog

from booking_sync.clock import Clock
from booking_sync.exceptions import FatalOrchestratorError
from booking_sync.infrastructure.database.models import GLOBAL_SYNC_SCOPE, SyncMetrics
from booking_sync.services.locking import PersistentLock, make_owner_token
from booking_sync.services.results import SyncRunResult, SyncStats
from booking_sync.services.retry_queue import RetryQueue
from booking_sync.services.sync_engine import SyncEngine
from booking_sync.services.sync_state import SyncStateStore, classify_health

logger = structlog.get_logger()


class RunStatus:
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


class SyncOrchestrator:
    """Guards full syncs with the global lock and a wall-clock deadline.

    Only one run proceeds at a time across every process sharing the
    database. A run that outlives ``max_sync_duration`` is marked failed and
    its lock released; the engine task is left to finish on its own and its
    late completion write is discarded.
    """

    def __init__(
        self,
        engine: SyncEngine,
        lock: PersistentLock,
        state: SyncStateStore,
        retry_queue: RetryQueue,
        clock: Clock,
        max_sync_duration: float = 600,
    ):
        self.engine = engine
        self.lock = lock
        self.state = state
        self.retry_queue = retry_queue
        self.clock = clock
        self.max_sync_duration = max_sync_duration
        self._stragglers: set[asyncio.Task] = set()

    async def is_sync_running(self) -> bool:
        return await self.lock.is_held(GLOBAL_SYNC_SCOPE)

    async def run_sync(self) -> SyncRunResult:
        if await self.is_sync_running():
            logger.info("Sync already running, skipping")
            return SyncRunResult(status=RunStatus.SKIPPED)

        owner = make_owner_token()
        if not await self.lock.acquire(GLOBAL_SYNC_SCOPE, owner, self.max_sync_duration):
            logger.info("Sync lock taken by another process, skipping")
            return SyncRunResult(status=RunStatus.SKIPPED)

        run_id = uuid4().hex
        log = logger.bind(run_id=run_id)
        try:
            await self.state.start_run(run_id)
            stats = await self._run_with_deadline(run_id)
            if stats is None:
                message = f"Sync exceeded {self.max_sync_duration:g}s and was abandoned"
                log.error("Sync timed out", max_sync_duration=self.max_sync_duration)
                await self.state.fail_run(run_id, message)
                await self.state.record_error("timeout", message, run_id=run_id)
                return SyncRunResult(status=RunStatus.TIMEOUT, run_id=run_id, error=message)

            log.info("Sync completed", **stats.summary())
            status = RunStatus.FAILED if stats.orders_failed else RunStatus.COMPLETED
            return SyncRunResult(status=status, run_id=run_id, stats=stats)
        except Exception as e:
            error = FatalOrchestratorError(f"Sync run failed: {e}")
            log.error("Sync failed", error=str(e), exc_info=True)
            await self._record_failure(run_id, error, traceback.format_exc())
            return SyncRunResult(status=RunStatus.FAILED, run_id=run_id, error=str(error))
        finally:
            await self.lock.release(GLOBAL_SYNC_SCOPE, owner)

    async def _run_with_deadline(self, run_id: str) -> Optional[SyncStats]:
        """Run the engine, returning None if the deadline fires first."""
        engine_task = asyncio.create_task(self.engine.run_full_sync(run_id=run_id))
        deadline = asyncio.create_task(self.clock.sleep(self.max_sync_duration))

        await asyncio.wait({engine_task, deadline}, return_when=asyncio.FIRST_COMPLETED)

        if engine_task.done():
            deadline.cancel()
            return engine_task.result()

        self._stragglers.add(engine_task)
        engine_task.add_done_callback(self._straggler_done)
        return None

    def _straggler_done(self, task: asyncio.Task) -> None:
        self._stragglers.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Abandoned sync run ended with error", error=str(error))
        else:
            logger.info("Abandoned sync run finished")

    async def _record_failure(self, run_id: str, error: Exception, details: str) -> None:
        try:
            await self.state.record_error("orchestrator", str(error), details, run_id=run_id)
            await self.state.fail_run(run_id, str(error))
        except Exception as e:
            logger.error("Could not record sync failure", run_id=run_id, error=str(e))

    async def wait_for_stragglers(self) -> None:
        """Wait for abandoned runs to finish. Used at shutdown and in tests."""
        if self._stragglers:
            await asyncio.gather(*self._stragglers, return_exceptions=True)

    @staticmethod
    def health(metrics: Optional[SyncMetrics]) -> str:
        return classify_health(metrics)

    async def status(self) -> dict[str, Any]:
        state = await self.state.get_state()
        metrics = await self.state.get_metrics()
        lock = await self.lock.read(GLOBAL_SYNC_SCOPE)
        now = self.clock.now()

        return {
            "state": {
                "status": state.status,
                "run_id": state.run_id,
                "started_at": state.started_at,
                "completed_at": state.completed_at,
                "last_sync_time": state.last_sync_time,
                "last_order_id": state.last_order_id,
                "orders_checked": state.orders_checked,
                "orders_processed": state.orders_processed,
                "orders_successful": state.orders_successful,
                "orders_failed": state.orders_failed,
                "orders_skipped": state.orders_skipped,
                "error_message": state.error_message,
            },
            "metrics": {
                "total_syncs": metrics.total_syncs,
                "successful_syncs": metrics.successful_syncs,
                "failed_syncs": metrics.failed_syncs,
                "success_rate": metrics.success_rate,
                "total_orders": metrics.total_orders,
                "successful_orders": metrics.successful_orders,
                "failed_orders": metrics.failed_orders,
                "last_sync_at": metrics.last_sync_at,
                "last_sync_duration_ms": metrics.last_sync_duration_ms,
                "average_sync_duration_ms": metrics.average_sync_duration_ms,
            },
            "health": self.health(metrics),
            "lock": {
                "locked": lock.locked,
                "owner": lock.owner,
                "locked_at": lock.locked_at,
                "expires_at": lock.expires_at,
                "age_seconds": lock.age_seconds(now),
                "stale": lock.is_stale(now, self.lock.max_age),
            },
            "pending_retries": await self.retry_queue.count_pending(),
        }


class SyncScheduler:
    """Triggers ``run_sync`` every ``interval`` seconds until stopped."""

    def __init__(self, orchestrator: SyncOrchestrator, clock: Clock, interval: float):
        self.orchestrator = orchestrator
        self.clock = clock
        self.interval = interval
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    def stop(self) -> None:
        self._stopped.set()

    async def run_forever(self) -> None:
        logger.info("Sync scheduler started", interval=self.interval)
        while not self._stopped.is_set():
            try:
                result = await self.orchestrator.run_sync()
                logger.info("Scheduled sync finished", status=result.status, run_id=result.run_id)
            except Exception as e:
                logger.error("Scheduled sync error", error=str(e))

            if self._stopped.is_set():
                break
            sleeper = asyncio.create_task(self.clock.sleep(self.interval))
            stopper = asyncio.create_task(self._stopped.wait())
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
            for task in (sleeper, stopper):
                task.cancel()
        logger.info("Sync scheduler stopped")
