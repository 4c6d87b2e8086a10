"""Time source abstraction so schedules and deadlines can be simulated."""

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Provides the current time and cooperative sleeping."""

    def now(self) -> datetime:
        """Current time as a naive UTC datetime (the storage convention)."""
        ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
