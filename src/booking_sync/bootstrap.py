"""Object graph construction.

Every service receives its collaborators through its constructor. The API,
the Celery tasks and the tests build the graph here instead of reaching for
module-level instances.
"""

import importlib
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from booking_sync.clock import Clock, SystemClock
from booking_sync.collaborators import CalendarBackend, OrderSource
from booking_sync.config import Settings
from booking_sync.infrastructure.database.connection import (
    create_engine_from_settings,
    create_session_factory,
)
from booking_sync.services.conflict_detector import AvailabilityChecker
from booking_sync.services.locking import PersistentLock
from booking_sync.services.orchestrator import SyncOrchestrator, SyncScheduler
from booking_sync.services.order_processor import OrderProcessor
from booking_sync.services.processed_orders import ProcessedOrderLedger
from booking_sync.services.retry_queue import BackoffPolicy, RetryQueue
from booking_sync.services.sync_engine import SyncEngine
from booking_sync.services.sync_state import SyncStateStore

logger = structlog.get_logger()


@dataclass
class SyncContainer:
    settings: Settings
    clock: Clock
    session_factory: async_sessionmaker[AsyncSession]
    order_source: OrderSource
    calendar: CalendarBackend
    lock: PersistentLock
    ledger: ProcessedOrderLedger
    retry_queue: RetryQueue
    state: SyncStateStore
    availability: AvailabilityChecker
    processor: OrderProcessor
    engine: SyncEngine
    orchestrator: SyncOrchestrator
    db_engine: Optional[AsyncEngine] = None

    def scheduler(self) -> SyncScheduler:
        return SyncScheduler(self.orchestrator, self.clock, self.settings.sync_interval)

    async def close(self) -> None:
        if self.db_engine is not None:
            await self.db_engine.dispose()


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    order_source: OrderSource,
    calendar: CalendarBackend,
    clock: Optional[Clock] = None,
    rng: Optional[random.Random] = None,
    db_engine: Optional[AsyncEngine] = None,
) -> SyncContainer:
    """Wire every service from settings and the two external collaborators."""
    clock = clock or SystemClock()

    lock = PersistentLock(session_factory, clock, max_age=settings.max_sync_duration)
    ledger = ProcessedOrderLedger(session_factory, clock)
    retry_queue = RetryQueue(
        session_factory,
        clock,
        backoff=BackoffPolicy(
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter_ratio=settings.retry_jitter_ratio,
            rng=rng,
        ),
        max_retries=settings.max_retries,
    )
    state = SyncStateStore(session_factory, clock)
    availability = AvailabilityChecker(
        calendar,
        timezone=settings.timezone,
        session_duration=settings.session_duration,
        buffer_time=settings.buffer_time,
    )
    processor = OrderProcessor(
        calendar=calendar,
        availability=availability,
        ledger=ledger,
        retry_queue=retry_queue,
        clock=clock,
        timezone_name=settings.timezone,
        lock=lock,
        lock_ttl=settings.order_lock_ttl,
    )
    engine = SyncEngine(
        order_source=order_source,
        processor=processor,
        ledger=ledger,
        retry_queue=retry_queue,
        state=state,
        lock=lock,
        clock=clock,
        batch_size=settings.batch_size,
        delay_between_orders=settings.delay_between_orders,
        overlap_minutes=settings.sync_overlap_minutes,
        lookback_hours=settings.sync_lookback_hours,
        retry_batch_size=settings.retry_batch_size,
        order_lock_ttl=settings.order_lock_ttl,
    )
    orchestrator = SyncOrchestrator(
        engine=engine,
        lock=lock,
        state=state,
        retry_queue=retry_queue,
        clock=clock,
        max_sync_duration=settings.max_sync_duration,
    )

    return SyncContainer(
        settings=settings,
        clock=clock,
        session_factory=session_factory,
        order_source=order_source,
        calendar=calendar,
        lock=lock,
        ledger=ledger,
        retry_queue=retry_queue,
        state=state,
        availability=availability,
        processor=processor,
        engine=engine,
        orchestrator=orchestrator,
        db_engine=db_engine,
    )


def import_string(path: str) -> Callable[..., Any]:
    """Resolve ``"package.module:attribute"``."""
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Expected 'package.module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError as e:
        raise ImportError(f"{module_name} has no attribute {attribute!r}") from e


def load_collaborators(settings: Settings) -> tuple[OrderSource, CalendarBackend]:
    """Instantiate the storefront and calendar clients named in the settings."""
    if not settings.order_source_factory or not settings.calendar_backend_factory:
        raise ValueError(
            "ORDER_SOURCE_FACTORY and CALENDAR_BACKEND_FACTORY must be configured"
        )
    order_source = import_string(settings.order_source_factory)(settings)
    calendar = import_string(settings.calendar_backend_factory)(settings)
    logger.info(
        "Collaborators loaded",
        order_source=settings.order_source_factory,
        calendar=settings.calendar_backend_factory,
    )
    return order_source, calendar


def build_default_container(settings: Settings) -> SyncContainer:
    """Container backed by the configured database and collaborator factories."""
    db_engine = create_engine_from_settings(settings)
    order_source, calendar = load_collaborators(settings)
    return build_container(
        settings,
        create_session_factory(db_engine),
        order_source,
        calendar,
        db_engine=db_engine,
    )
