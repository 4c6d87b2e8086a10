"""Durable retry queue with exponential backoff."""

import random
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import orjson
import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_sync.clock import Clock
from booking_sync.exceptions import ExhaustedRetryError
from booking_sync.infrastructure.database.connection import session_scope
from booking_sync.infrastructure.database.models import (
    FailureCategory,
    RetryEntry,
    RetryResolution,
)

logger = structlog.get_logger()


class BackoffPolicy:
    """Exponential backoff: min(base * 2^n, max) plus up to ``jitter_ratio`` of the delay."""

    def __init__(
        self,
        base_delay: float = 60.0,
        max_delay: float = 24 * 60 * 60.0,
        jitter_ratio: float = 0.3,
        rng: Optional[random.Random] = None,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self.rng = rng or random.Random()

    def base(self, retry_count: int) -> float:
        """Delay in seconds before jitter."""
        # Cap the exponent so huge retry counts cannot overflow
        exponent = min(retry_count, 32)
        return min(self.base_delay * (2**exponent), self.max_delay)

    def delay(self, retry_count: int) -> float:
        delay = self.base(retry_count)
        return delay + self.rng.uniform(0, self.jitter_ratio) * delay

    def next_retry_at(self, now: datetime, retry_count: int) -> datetime:
        return now + timedelta(seconds=self.delay(retry_count))


class RetryQueue:
    """Per-order queue of failed synchronizations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: int = 5,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.backoff = backoff or BackoffPolicy()
        self.max_retries = max_retries

    async def enqueue(
        self,
        order_id: str,
        payload: dict[str, Any],
        reason: str,
        category: FailureCategory | str = FailureCategory.TRANSIENT,
    ) -> RetryEntry:
        """Insert a new entry, or reset the existing one for this order."""
        category_value = category.value if isinstance(category, FailureCategory) else category
        now = self.clock.now()
        values = {
            "order_data": orjson.dumps(payload).decode(),
            "failure_reason": reason,
            "failure_category": category_value,
            "retry_count": 0,
            "max_retries": self.max_retries,
            "next_retry_at": self.backoff.next_retry_at(now, 0),
            "resolved_at": None,
            "resolution": None,
        }

        try:
            entry = await self._insert_or_update(order_id, values, now)
        except IntegrityError:
            # Lost the insert race on the unique order_id; the row exists now
            entry = await self._insert_or_update(order_id, values, now)

        logger.info(
            "Order queued for retry",
            order_id=order_id,
            category=category_value,
            next_retry_at=entry.next_retry_at.isoformat(),
        )
        return entry

    async def _insert_or_update(
        self, order_id: str, values: dict[str, Any], now: datetime
    ) -> RetryEntry:
        async with session_scope(self.session_factory) as session:
            entry = await session.scalar(
                select(RetryEntry).where(RetryEntry.order_id == order_id).with_for_update()
            )
            if entry is None:
                entry = RetryEntry(order_id=order_id, created_at=now, **values)
                session.add(entry)
            else:
                for key, value in values.items():
                    setattr(entry, key, value)
        return entry

    async def dequeue_ready(self, limit: int = 10) -> list[RetryEntry]:
        """Unresolved, non-exhausted entries whose retry time has come, oldest first."""
        now = self.clock.now()
        query = (
            select(RetryEntry)
            .where(
                RetryEntry.resolved_at.is_(None),
                RetryEntry.retry_count < RetryEntry.max_retries,
                RetryEntry.next_retry_at <= now,
            )
            .order_by(RetryEntry.next_retry_at.asc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())

    async def record_failure(self, order_id: str, error: str) -> Optional[RetryEntry]:
        """Count a failed attempt and schedule the next one."""
        now = self.clock.now()
        async with session_scope(self.session_factory) as session:
            entry = await session.scalar(
                select(RetryEntry).where(RetryEntry.order_id == order_id).with_for_update()
            )
            if entry is None:
                logger.warning("Retry failure for unknown entry", order_id=order_id)
                return None
            entry.retry_count += 1
            entry.last_attempt_at = now
            entry.next_retry_at = self.backoff.next_retry_at(now, entry.retry_count)
            entry.failure_reason = error

        if entry.exhausted:
            logger.error(
                "Retry budget exhausted, manual resolution required",
                order_id=order_id,
                error=str(ExhaustedRetryError(order_id, entry.retry_count)),
            )
        else:
            logger.info(
                "Retry attempt failed",
                order_id=order_id,
                retry_count=entry.retry_count,
                next_retry_at=entry.next_retry_at.isoformat(),
            )
        return entry

    async def record_success(self, order_id: str) -> Optional[RetryEntry]:
        return await self.resolve(order_id, RetryResolution.SUCCESS)

    async def resolve(
        self, order_id: str, resolution: RetryResolution | str
    ) -> Optional[RetryEntry]:
        """Close an entry with a terminal resolution."""
        resolution_value = (
            resolution.value if isinstance(resolution, RetryResolution) else resolution
        )
        now = self.clock.now()
        async with session_scope(self.session_factory) as session:
            entry = await session.scalar(
                select(RetryEntry).where(RetryEntry.order_id == order_id)
            )
            if entry is None:
                return None
            entry.resolved_at = now
            entry.resolution = resolution_value
            entry.last_attempt_at = now
        logger.info("Retry entry resolved", order_id=order_id, resolution=resolution_value)
        return entry

    async def get(self, order_id: str) -> Optional[RetryEntry]:
        async with self.session_factory() as session:
            return await session.scalar(
                select(RetryEntry).where(RetryEntry.order_id == order_id)
            )

    async def pending(self, limit: int = 50) -> list[RetryEntry]:
        """Unresolved entries, exhausted ones included, most recently attempted first."""
        query = (
            select(RetryEntry)
            .where(RetryEntry.resolved_at.is_(None))
            .order_by(RetryEntry.next_retry_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())

    async def queued_ids(self, order_ids: Iterable[str]) -> set[str]:
        """Subset of ``order_ids`` with an unresolved entry."""
        ids = list(order_ids)
        if not ids:
            return set()
        query = select(RetryEntry.order_id).where(
            RetryEntry.order_id.in_(ids), RetryEntry.resolved_at.is_(None)
        )
        async with self.session_factory() as session:
            return set((await session.scalars(query)).all())

    async def count_pending(self) -> int:
        async with self.session_factory() as session:
            result = await session.scalar(
                select(func.count()).select_from(RetryEntry).where(RetryEntry.resolved_at.is_(None))
            )
        return result or 0

    @staticmethod
    def payload(entry: RetryEntry) -> dict[str, Any]:
        """Decode the stored order snapshot."""
        return orjson.loads(entry.order_data)
