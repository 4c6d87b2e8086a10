"""Result and option types passed between the processor, engine and orchestrator."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from booking_sync.infrastructure.database.models import FailureCategory


@dataclass
class ProcessOptions:
    force: bool = False
    allow_unpaid: bool = False
    skip_availability_check: bool = False
    queue_on_failure: bool = False
    sync_source: str = "manual"


@dataclass
class BookingResult:
    line_item_id: Optional[str]
    product_name: str
    booking_date: Optional[str]
    booking_time: Optional[str]
    success: bool = False
    calendar_event_id: Optional[str] = None
    calendar_event_link: Optional[str] = None
    reused_event: bool = False
    errors: list[str] = field(default_factory=list)
    category: Optional[FailureCategory] = None

    def fail(self, category: FailureCategory, *errors: str) -> "BookingResult":
        self.success = False
        self.category = category
        self.errors.extend(errors)
        return self


@dataclass
class OrderResult:
    order_id: str
    order_number: Optional[str]
    success: bool = False
    skipped: bool = False
    message: Optional[str] = None
    queued_for_retry: bool = False
    bookings: list[BookingResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    category: Optional[FailureCategory] = None

    def fail(self, category: FailureCategory, *errors: str) -> "OrderResult":
        self.success = False
        self.category = category
        self.errors.extend(errors)
        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value if self.category else None
        for booking, raw in zip(self.bookings, data["bookings"]):
            raw["category"] = booking.category.value if booking.category else None
        return data


@dataclass
class BatchResult:
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    order_results: list[OrderResult] = field(default_factory=list)


@dataclass
class SyncStats:
    """Counters for one full sync."""

    run_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    orders_checked: int = 0
    orders_processed: int = 0
    orders_successful: int = 0
    orders_failed: int = 0
    orders_skipped: int = 0
    retries_attempted: int = 0
    retries_successful: int = 0
    retries_failed: int = 0
    checkpoint: Optional[datetime] = None

    def add_batch(self, batch: BatchResult) -> None:
        self.orders_processed += batch.processed
        self.orders_successful += batch.successful
        self.orders_failed += batch.failed
        self.orders_skipped += batch.skipped

    @property
    def duration_ms(self) -> int:
        if not self.started_at or not self.completed_at:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def summary(self) -> dict[str, Any]:
        return {
            "orders_checked": self.orders_checked,
            "processed": self.orders_processed,
            "successful": self.orders_successful,
            "failed": self.orders_failed,
            "skipped": self.orders_skipped,
            "retries_attempted": self.retries_attempted,
            "retries_successful": self.retries_successful,
            "retries_failed": self.retries_failed,
            "duration_ms": self.duration_ms,
        }


@dataclass
class SyncRunResult:
    """Outcome of one orchestrator trigger."""

    status: str
    run_id: Optional[str] = None
    stats: Optional[SyncStats] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "run_id": self.run_id,
            "error": self.error,
            "stats": self.stats.summary() if self.stats else None,
        }
