"""Append-only ledger of synchronized orders (the idempotency guard)."""

from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_sync.clock import Clock
from booking_sync.infrastructure.database.connection import session_scope
from booking_sync.infrastructure.database.models import ProcessedOrder

logger = structlog.get_logger()


class ProcessedOrderLedger:
    """One immutable record per synchronized order id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock):
        self.session_factory = session_factory
        self.clock = clock

    async def is_processed(self, order_id: str) -> bool:
        async with self.session_factory() as session:
            found = await session.scalar(
                select(ProcessedOrder.order_id).where(ProcessedOrder.order_id == order_id)
            )
        return found is not None

    async def processed_ids(self, order_ids: Iterable[str]) -> set[str]:
        """Subset of ``order_ids`` already in the ledger."""
        ids = list(order_ids)
        if not ids:
            return set()
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(ProcessedOrder.order_id).where(ProcessedOrder.order_id.in_(ids))
            )
            return set(rows.all())

    async def record(
        self,
        order_id: str,
        order_number: Optional[str],
        payment_status: Optional[str],
        bookings: list[dict[str, Any]],
        sync_source: str,
    ) -> bool:
        """Insert the record. Returns False if the order was already recorded."""
        event_ids = [b.get("calendar_event_id") for b in bookings if b.get("calendar_event_id")]
        try:
            async with session_scope(self.session_factory) as session:
                session.add(
                    ProcessedOrder(
                        order_id=order_id,
                        order_number=order_number,
                        payment_status=payment_status,
                        bookings=bookings,
                        calendar_event_id=event_ids[0] if event_ids else None,
                        sync_source=sync_source,
                        processed_at=self.clock.now(),
                    )
                )
        except IntegrityError:
            logger.warning("Order already recorded as processed", order_id=order_id)
            return False
        return True

    async def get(self, order_id: str) -> Optional[ProcessedOrder]:
        async with self.session_factory() as session:
            return await session.get(ProcessedOrder, order_id)

    async def recent(self, limit: int = 10) -> list[ProcessedOrder]:
        query = select(ProcessedOrder).order_by(ProcessedOrder.processed_at.desc()).limit(limit)
        async with self.session_factory() as session:
            return list((await session.scalars(query)).all())
