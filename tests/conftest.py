"""Pytest configuration and fixtures."""

import asyncio
import random
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from booking_sync.bootstrap import SyncContainer, build_container
from booking_sync.clock import to_naive_utc
from booking_sync.config import Settings
from booking_sync.infrastructure.database.connection import create_all, create_session_factory
from booking_sync.main import create_app
from booking_sync.schemas import CalendarEvent, EventCreateResult, EventRequest, Order

# Booking dates in the fixtures are 2025-03-10; the clock starts before that.
CLOCK_START = datetime(2025, 3, 1, 0, 0)


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Manually advanced clock. ``sleep`` returns once ``advance`` passes its deadline."""

    def __init__(self, start: datetime = CLOCK_START):
        self.current = start
        self._sleepers: list[tuple[datetime, asyncio.Future]] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.current + timedelta(seconds=seconds), future))
        await future

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        waiting = []
        for deadline, future in self._sleepers:
            if future.done():
                continue
            if deadline <= self.current:
                future.set_result(None)
            else:
                waiting.append((deadline, future))
        self._sleepers = waiting

    @property
    def sleeping(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def wait_for_sleepers(self, count: int = 1, timeout: float = 5.0) -> None:
        """Let other tasks run until ``count`` sleepers are parked."""
        loop = asyncio.get_running_loop()
        give_up = loop.time() + timeout
        while self.sleeping < count:
            if loop.time() > give_up:
                raise AssertionError(f"expected {count} sleepers, have {self.sleeping}")
            await asyncio.sleep(0.01)


class FakeOrderSource:
    """In-memory storefront."""

    def __init__(self):
        self.orders: dict[str, Order] = {}
        self.fetch_calls: list[datetime] = []
        self.fetch_error: Optional[Exception] = None

    def add(self, *orders: Order) -> None:
        for order in orders:
            self.orders[order.id] = order

    async def fetch_orders_since(
        self, checkpoint: datetime, filters: Optional[dict[str, Any]] = None
    ) -> list[Order]:
        self.fetch_calls.append(checkpoint)
        if self.fetch_error is not None:
            raise self.fetch_error
        found = [
            order
            for order in self.orders.values()
            if order.updated_at is None or to_naive_utc(order.updated_at) >= checkpoint
        ]
        return sorted(found, key=lambda o: to_naive_utc(o.updated_at) if o.updated_at else checkpoint)

    async def fetch_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)


class FakeCalendar:
    """In-memory calendar with failure injection.

    ``create_errors`` maps a 1-based create call number to the exception it
    raises. Setting ``gate`` parks every create call until the event is set.
    """

    def __init__(self):
        self.events: dict[str, CalendarEvent] = {}
        self.created: list[EventRequest] = []
        self.deleted: list[str] = []
        self.create_errors: dict[int, Exception] = {}
        self.reject_with: Optional[str] = None
        self.gate: Optional[asyncio.Event] = None
        self.create_started = asyncio.Event()
        self._calls = 0
        self._seq = 0

    def add_event(
        self,
        summary: str,
        start: datetime,
        end: datetime,
        metadata: Optional[dict[str, str]] = None,
    ) -> CalendarEvent:
        self._seq += 1
        event = CalendarEvent(
            id=f"existing-{self._seq}",
            summary=summary,
            start=start,
            end=end,
            metadata=metadata or {},
        )
        self.events[event.id] = event
        return event

    async def list_events(self, day_start: datetime, day_end: datetime) -> list[CalendarEvent]:
        # Floating (naive) events are returned as-is, like an all-calendars query
        return [
            event
            for event in self.events.values()
            if event.start.tzinfo is None or (event.start < day_end and event.end > day_start)
        ]

    async def create_event(self, request: EventRequest) -> EventCreateResult:
        self._calls += 1
        self.create_started.set()
        if self.gate is not None:
            await self.gate.wait()
        error = self.create_errors.get(self._calls)
        if error is not None:
            raise error
        if self.reject_with is not None:
            return EventCreateResult(success=False, error=self.reject_with)

        self._seq += 1
        event_id = f"evt-{self._seq}"
        self.events[event_id] = CalendarEvent(
            id=event_id,
            link=f"https://calendar.test/{event_id}",
            summary=request.summary,
            start=request.start,
            end=request.end,
            metadata=request.metadata,
        )
        self.created.append(request)
        return EventCreateResult(
            success=True, event_id=event_id, event_link=f"https://calendar.test/{event_id}"
        )

    async def delete_event(self, event_id: str) -> None:
        self.deleted.append(event_id)
        self.events.pop(event_id, None)

    async def find_event_by_order_id(self, order_id: str) -> Optional[CalendarEvent]:
        for event in self.events.values():
            if event.metadata.get("order_id") == order_id:
                return event
        return None


# =============================================================================
# Settings and Database
# =============================================================================


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Get test settings with overrides."""
    return Settings(
        _env_file=None,
        app_env="test",
        debug=True,
        database_dsn=f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}",
        timezone="Asia/Manila",
        session_duration=60,
        buffer_time=15,
        batch_size=2,
        delay_between_orders=0,
        max_retries=5,
        retry_base_delay=60,
        max_sync_duration=600,
        sync_interval=300,
        sync_enabled=False,
        order_source_factory="",
        calendar_backend_factory="",
    )


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Temporary SQLite database with every table created."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


# =============================================================================
# Collaborators and Container
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clock_factory() -> Callable[..., FakeClock]:
    """Independent clocks, e.g. for a scheduler tested apart from the runs it triggers."""
    return FakeClock


@pytest.fixture
def order_source() -> FakeOrderSource:
    return FakeOrderSource()


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def container(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    order_source: FakeOrderSource,
    calendar: FakeCalendar,
    clock: FakeClock,
) -> SyncContainer:
    return build_container(
        test_settings,
        session_factory,
        order_source,
        calendar,
        clock=clock,
        rng=random.Random(42),
    )


@pytest.fixture
def make_order() -> Callable[..., Order]:
    """Factory for storefront orders with one booking line by default."""

    def _make_order(
        order_id: str = "1001",
        *,
        order_number: str = "1001",
        financial_status: str = "paid",
        product: str = "Studio A",
        booking_date: Optional[str] = "2025-03-10",
        booking_time: Optional[str] = "10:00 AM",
        email: Optional[str] = "jane@example.com",
        customer_name: str = "Jane Doe",
        updated_at: Optional[datetime] = None,
        line_items: Optional[list[dict[str, Any]]] = None,
    ) -> Order:
        if line_items is None:
            properties = []
            if booking_date is not None:
                properties.append({"name": "Booking Date", "value": booking_date})
            if booking_time is not None:
                properties.append({"name": "Booking Time", "value": booking_time})
            line_items = [
                {
                    "id": int(order_id) * 10 if order_id.isdigit() else f"{order_id}-1",
                    "name": product,
                    "product_id": 555,
                    "quantity": 1,
                    "properties": properties,
                }
            ]
        return Order.model_validate(
            {
                "id": order_id,
                "order_number": order_number,
                "financial_status": financial_status,
                "email": email,
                "updated_at": updated_at or CLOCK_START - timedelta(hours=1),
                "line_items": line_items,
                "customer": {"name": customer_name, "email": email, "phone": "+63 900 000 0000"},
            }
        )

    return _make_order


def booking_line(
    line_id: int, product: str, booking_date: str, booking_time: str
) -> dict[str, Any]:
    return {
        "id": line_id,
        "name": product,
        "properties": [
            {"name": "Booking Date", "value": booking_date},
            {"name": "Booking Time", "value": booking_time},
        ],
    }


@pytest.fixture
def make_line() -> Callable[..., dict[str, Any]]:
    return booking_line


# =============================================================================
# API
# =============================================================================


@pytest_asyncio.fixture
async def client(container: SyncContainer) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app built around the test container."""
    app = create_app(container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
