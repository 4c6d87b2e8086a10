"""Slot availability rules.

A slot is the half-open window ``[start, start + session + buffer)``. It
conflicts with an overlapping calendar event when the event is a closure
("Closed", "Closed: holiday", ...) or, with product scoping, when the event
belongs to the same product. Event titles follow ``"{product} - {customer}"``.
"""

import re
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

import structlog

from booking_sync.collaborators import CalendarBackend
from booking_sync.schemas import CalendarEvent

logger = structlog.get_logger()

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_PATTERN = re.compile(r"^(1[0-2]|[1-9]):([0-5][0-9])\s*(AM|PM)$", re.IGNORECASE)

CLOSED_TITLE = "closed"
PRODUCT_SEPARATOR = " - "


def parse_booking_date(date_str: str) -> date:
    if not DATE_PATTERN.match(date_str or ""):
        raise ValueError(f"Invalid booking date: {date_str!r}")
    return date.fromisoformat(date_str)


def parse_booking_time(time_str: str) -> time:
    """Parse ``H:MM AM/PM`` into a 24-hour time."""
    match = TIME_PATTERN.match((time_str or "").strip())
    if not match:
        raise ValueError(f"Invalid booking time: {time_str!r}")
    hour, minute, period = int(match.group(1)), int(match.group(2)), match.group(3).upper()
    hour = hour % 12
    if period == "PM":
        hour += 12
    return time(hour, minute)


def is_closure(title: Optional[str]) -> bool:
    if not title:
        return False
    normalized = title.strip().lower()
    return (
        normalized == CLOSED_TITLE
        or normalized.startswith(CLOSED_TITLE + " ")
        or normalized.startswith(CLOSED_TITLE + ":")
    )


def event_product_name(title: str) -> str:
    """Product part of an event title: text before the first ``" - "``."""
    head, sep, _ = title.partition(PRODUCT_SEPARATOR)
    return head.strip() if sep else title.strip()


def overlaps(slot_start: datetime, slot_end: datetime, event: CalendarEvent) -> bool:
    if event.start is None or event.end is None:
        return False
    return slot_start < event.end and slot_end > event.start


def conflicting_events(
    slot_start: datetime,
    slot_end: datetime,
    events: Iterable[CalendarEvent],
    product_name: Optional[str] = None,
) -> list[CalendarEvent]:
    """Events that block the slot."""
    blocking = []
    wanted = product_name.strip().lower() if product_name else None
    for event in events:
        if not overlaps(slot_start, slot_end, event):
            continue
        if is_closure(event.summary):
            blocking.append(event)
            continue
        if wanted and event.summary:
            if event_product_name(event.summary).lower() != wanted:
                continue
        blocking.append(event)
    return blocking


def is_available(
    slot_start: datetime,
    slot_end: datetime,
    events: Iterable[CalendarEvent],
    product_name: Optional[str] = None,
) -> bool:
    return not conflicting_events(slot_start, slot_end, events, product_name)


class AvailabilityChecker:
    """Resolves booking date/time into a slot and checks it against the calendar."""

    def __init__(
        self,
        calendar: CalendarBackend,
        timezone: str,
        session_duration: int,
        buffer_time: int,
    ):
        self.calendar = calendar
        self.tz: tzinfo = ZoneInfo(timezone)
        self.session_duration = session_duration
        self.buffer_time = buffer_time

    def start_of(self, date_str: str, time_str: str) -> datetime:
        return datetime.combine(
            parse_booking_date(date_str), parse_booking_time(time_str), tzinfo=self.tz
        )

    def slot(self, date_str: str, time_str: str) -> tuple[datetime, datetime]:
        start = self.start_of(date_str, time_str)
        return start, start + timedelta(minutes=self.session_duration + self.buffer_time)

    def session(self, date_str: str, time_str: str) -> tuple[datetime, datetime]:
        """Event window: the session itself, without the buffer."""
        start = self.start_of(date_str, time_str)
        return start, start + timedelta(minutes=self.session_duration)

    def day_bounds(self, date_str: str) -> tuple[datetime, datetime]:
        day_start = datetime.combine(parse_booking_date(date_str), time(0, 0), tzinfo=self.tz)
        return day_start, day_start + timedelta(days=1)

    def _localize(self, event: CalendarEvent) -> CalendarEvent:
        if (event.start and event.start.tzinfo is None) or (event.end and event.end.tzinfo is None):
            return event.model_copy(
                update={
                    "start": event.start.replace(tzinfo=self.tz) if event.start and event.start.tzinfo is None else event.start,
                    "end": event.end.replace(tzinfo=self.tz) if event.end and event.end.tzinfo is None else event.end,
                }
            )
        return event

    async def check(
        self, date_str: str, time_str: str, product_name: Optional[str] = None
    ) -> bool:
        """True when the slot is free for ``product_name``."""
        slot_start, slot_end = self.slot(date_str, time_str)
        day_start, day_end = self.day_bounds(date_str)
        events = [self._localize(e) for e in await self.calendar.list_events(day_start, day_end)]

        blocking = conflicting_events(slot_start, slot_end, events, product_name)
        if blocking:
            logger.info(
                "Slot unavailable",
                date=date_str,
                time=time_str,
                product=product_name,
                blocking=[e.summary for e in blocking],
            )
        return not blocking
