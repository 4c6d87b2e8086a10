"""Contracts for the storefront and calendar clients supplied by the deployment."""

from datetime import datetime
from typing import Any, Optional, Protocol

from booking_sync.schemas import CalendarEvent, EventCreateResult, EventRequest, Order


class OrderSource(Protocol):
    """Read access to the storefront's order API.

    Implementations raise `booking_sync.exceptions.TransientError` for
    timeouts, 5xx responses and rate limits.
    """

    async def fetch_orders_since(
        self, checkpoint: datetime, filters: Optional[dict[str, Any]] = None
    ) -> list[Order]:
        """Orders updated at or after `checkpoint`, ascending by update time."""
        ...

    async def fetch_order(self, order_id: str) -> Optional[Order]: ...


class CalendarBackend(Protocol):
    """Booking calendar wrapper."""

    async def list_events(
        self, day_start: datetime, day_end: datetime
    ) -> list[CalendarEvent]: ...

    async def create_event(self, request: EventRequest) -> EventCreateResult: ...

    async def delete_event(self, event_id: str) -> None: ...

    async def find_event_by_order_id(self, order_id: str) -> Optional[CalendarEvent]: ...
