"""Durable resource locks.

One table backs both the global run lock (scope ``"sync"``) and the per-order
locks taken by on-demand syncs (scope ``"order:<id>"``), so every replica sees
the same holders.
"""

import os
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional
from uuid import uuid4

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_sync.clock import Clock
from booking_sync.exceptions import LockContentionError
from booking_sync.infrastructure.database.connection import session_scope
from booking_sync.infrastructure.database.models import SyncLock

logger = structlog.get_logger()


def order_scope(order_id: str) -> str:
    return f"order:{order_id}"


def make_owner_token() -> str:
    """Identifies one holder: host, process and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


@dataclass
class LockState:
    """Snapshot of a lock row."""

    scope: str
    locked: bool = False
    owner: Optional[str] = None
    locked_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def age_seconds(self, now: datetime) -> Optional[float]:
        if not self.locked_at:
            return None
        return (now - self.locked_at).total_seconds()

    def is_stale(self, now: datetime, max_age: Optional[float] = None) -> bool:
        if not self.locked:
            return False
        if self.expires_at is None or self.expires_at <= now:
            return True
        age = self.age_seconds(now)
        return max_age is not None and age is not None and age > max_age

    def is_held(self, now: datetime, max_age: Optional[float] = None) -> bool:
        return self.locked and not self.is_stale(now, max_age)


class PersistentLock:
    """Mutual exclusion stored in the database.

    Acquisition is a single conditional write, so two callers racing for the
    same scope can never both succeed. An expired lock, or one older than
    ``max_age`` seconds, is reclaimed by the next ``acquire``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock,
        max_age: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.max_age = max_age

    async def acquire(self, scope: str, owner: str, ttl: float) -> bool:
        """Take the lock for ``ttl`` seconds. Returns whether the caller now holds it."""
        now = self.clock.now()
        expires_at = now + timedelta(seconds=ttl)

        reclaimable = or_(
            SyncLock.locked.is_(False),
            SyncLock.expires_at.is_(None),
            SyncLock.expires_at <= now,
        )
        if self.max_age is not None:
            reclaimable = or_(
                reclaimable, SyncLock.locked_at <= now - timedelta(seconds=self.max_age)
            )

        stmt = (
            update(SyncLock)
            .where(SyncLock.scope == scope, reclaimable)
            .values(locked=True, owner=owner, locked_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            acquired = result.rowcount == 1

        if not acquired:
            # First use of this scope: the primary key decides the winner
            try:
                async with session_scope(self.session_factory) as session:
                    session.add(
                        SyncLock(
                            scope=scope,
                            locked=True,
                            owner=owner,
                            locked_at=now,
                            expires_at=expires_at,
                        )
                    )
                acquired = True
            except IntegrityError:
                acquired = False

        if acquired:
            logger.debug("Lock acquired", scope=scope, owner=owner, expires_at=expires_at.isoformat())
        return acquired

    async def release(self, scope: str, owner: str) -> bool:
        """Release the lock if ``owner`` still holds it."""
        stmt = (
            update(SyncLock)
            .where(SyncLock.scope == scope, SyncLock.owner == owner, SyncLock.locked.is_(True))
            .values(locked=False, owner=None, locked_at=None, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            released = result.rowcount == 1

        if released:
            logger.debug("Lock released", scope=scope, owner=owner)
        else:
            logger.warning("Lock not released, owner no longer holds it", scope=scope, owner=owner)
        return released

    async def force_release(self, scope: str) -> None:
        """Clear a lock regardless of holder. Operator use only."""
        stmt = (
            update(SyncLock)
            .where(SyncLock.scope == scope)
            .values(locked=False, owner=None, locked_at=None, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self.session_factory) as session:
            await session.execute(stmt)
        logger.warning("Lock force-released", scope=scope)

    async def read(self, scope: str) -> LockState:
        async with self.session_factory() as session:
            row = await session.scalar(select(SyncLock).where(SyncLock.scope == scope))
        if row is None:
            return LockState(scope=scope)
        return LockState(
            scope=scope,
            locked=row.locked,
            owner=row.owner,
            locked_at=row.locked_at,
            expires_at=row.expires_at,
        )

    async def is_held(self, scope: str) -> bool:
        """True when the scope has a live (non-stale) holder."""
        state = await self.read(scope)
        return state.is_held(self.clock.now(), self.max_age)

    @asynccontextmanager
    async def hold(self, scope: str, owner: str, ttl: float) -> AsyncGenerator[None, None]:
        """Hold the lock for the duration of the block.

        Raises:
            LockContentionError: if another owner holds the scope
        """
        if not await self.acquire(scope, owner, ttl):
            state = await self.read(scope)
            raise LockContentionError(scope, state.owner)
        try:
            yield
        finally:
            await self.release(scope, owner)
