"""SQLAlchemy models for the synchronization core.

All timestamps are naive UTC.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

SINGLETON_ID = 1
GLOBAL_SYNC_SCOPE = "sync"


class Base(DeclarativeBase):
    """Base class for all models."""


# =============================================================================
# Enums
# =============================================================================


class SyncRunStatus(str, PyEnum):
    """Lifecycle of an orchestrated run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureCategory(str, PyEnum):
    """Why an order failed to synchronize."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    TRANSIENT = "transient"


class RetryResolution(str, PyEnum):
    """Terminal outcome of a retry entry."""

    SUCCESS = "success"
    INVALID = "invalid"
    MANUAL = "manual"


# =============================================================================
# Processed Orders (idempotency ledger)
# =============================================================================


class ProcessedOrder(Base):
    """Proof that an order has been synchronized. Append-only."""

    __tablename__ = "processed_orders"

    order_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(50))
    payment_status: Mapped[Optional[str]] = mapped_column(String(50))

    # One entry per booking line, each with its calendar_event_id
    bookings: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    calendar_event_id: Mapped[Optional[str]] = mapped_column(String(255))

    sync_source: Mapped[Optional[str]] = mapped_column(String(50))
    processed_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_processed_orders_processed_at", "processed_at"),)


# =============================================================================
# Retry Queue
# =============================================================================


class RetryEntry(Base):
    """A failed order awaiting a scheduled retry."""

    __tablename__ = "retry_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # Raw order payload (JSON text) so the retry does not depend on the storefront
    order_data: Mapped[str] = mapped_column(Text, nullable=False)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    failure_category: Mapped[Optional[str]] = mapped_column(String(50))

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolution: Mapped[Optional[str]] = mapped_column(String(50))

    __table_args__ = (
        Index("ix_retry_queue_ready", "resolved_at", "next_retry_at"),
    )

    @property
    def exhausted(self) -> bool:
        return self.resolved_at is None and self.retry_count >= self.max_retries


# =============================================================================
# Locks
# =============================================================================


class SyncLock(Base):
    """Durable mutual-exclusion row, one per scope."""

    __tablename__ = "sync_lock"

    scope: Mapped[str] = mapped_column(String(255), primary_key=True)
    locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    owner: Mapped[Optional[str]] = mapped_column(String(255))
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


# =============================================================================
# Sync State, Metrics and Errors
# =============================================================================


class SyncState(Base):
    """Status of the current or most recent run (singleton row)."""

    __tablename__ = "sync_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(
        String(50), default=SyncRunStatus.IDLE.value, nullable=False
    )
    run_id: Mapped[Optional[str]] = mapped_column(String(64))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Checkpoint
    last_sync_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_order_id: Mapped[Optional[str]] = mapped_column(String(255))

    orders_checked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders_successful: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    error_message: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class SyncMetrics(Base):
    """Cumulative counters across runs (singleton row)."""

    __tablename__ = "sync_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_syncs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_syncs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_syncs: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    successful_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_sync_duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    average_sync_duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def success_rate(self) -> int:
        """Percentage of runs that finished without failed orders."""
        if not self.total_syncs:
            return 0
        return round(self.successful_syncs / self.total_syncs * 100)


class SyncErrorRecord(Base):
    """Orchestrator-level failure log."""

    __tablename__ = "sync_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    context: Mapped[str] = mapped_column(String(50), nullable=False)
    run_id: Mapped[Optional[str]] = mapped_column(String(64))
    error: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False, index=True
    )
