"""Order processing: booking extraction, validation and calendar event creation.

An order is recorded in the processed-orders ledger only when every one of its
bookings produced a calendar event. A partial success is an overall failure:
the events created during the attempt are deleted again, and the order is
queued for retry unless the failure can never succeed (validation).
"""

from dataclasses import asdict, dataclass
from datetime import date, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

import structlog

from booking_sync.clock import Clock
from booking_sync.collaborators import CalendarBackend
from booking_sync.exceptions import ConflictError, LockContentionError, ValidationError
from booking_sync.infrastructure.database.models import FailureCategory
from booking_sync.schemas import (
    BOOKING_DATE_PROPERTY,
    BOOKING_TIME_PROPERTY,
    CalendarEvent,
    EventRequest,
    Order,
)
from booking_sync.services.conflict_detector import (
    DATE_PATTERN,
    TIME_PATTERN,
    AvailabilityChecker,
    parse_booking_date,
)
from booking_sync.services.locking import PersistentLock, make_owner_token, order_scope
from booking_sync.services.processed_orders import ProcessedOrderLedger
from booking_sync.services.results import (
    BatchResult,
    BookingResult,
    OrderResult,
    ProcessOptions,
)
from booking_sync.services.retry_queue import RetryQueue

logger = structlog.get_logger()

DEFAULT_CUSTOMER_NAME = "Customer"
EVENT_SOURCE = "storefront_sync"


@dataclass
class Customer:
    name: str
    email: str = ""
    phone: str = ""


@dataclass
class Booking:
    """A date/time/product triple taken from one order line."""

    order_id: str
    order_number: Optional[str]
    line_item_id: Optional[str]
    product_name: str
    product_id: Optional[str]
    variant_id: Optional[str]
    quantity: int
    booking_date: Optional[str]
    booking_time: Optional[str]
    customer: Customer

    def snapshot(self) -> dict[str, Any]:
        return asdict(self)


class OrderProcessor:
    """Turns paid booking orders into calendar events, exactly once per order."""

    def __init__(
        self,
        calendar: CalendarBackend,
        availability: AvailabilityChecker,
        ledger: ProcessedOrderLedger,
        retry_queue: RetryQueue,
        clock: Clock,
        timezone_name: str,
        lock: Optional[PersistentLock] = None,
        lock_ttl: float = 300,
    ):
        self.calendar = calendar
        self.availability = availability
        self.ledger = ledger
        self.retry_queue = retry_queue
        self.clock = clock
        self.tz = ZoneInfo(timezone_name)
        self.timezone_name = timezone_name
        self.lock = lock
        self.lock_ttl = lock_ttl

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    @staticmethod
    def is_booking_order(order: Order) -> bool:
        return any(item.has_booking for item in order.line_items)

    @staticmethod
    def extract_customer_name(order: Order) -> str:
        for contact in (order.customer, order.billing_address, order.shipping_address):
            if contact is not None and contact.display_name:
                return contact.display_name
        return DEFAULT_CUSTOMER_NAME

    def extract_bookings(self, order: Order) -> list[Booking]:
        customer = Customer(
            name=self.extract_customer_name(order),
            email=(order.customer.email if order.customer else None) or order.email or "",
            phone=(order.customer.phone if order.customer else None) or order.phone or "",
        )
        bookings = []
        for item in order.line_items:
            if not item.has_booking:
                continue
            bookings.append(
                Booking(
                    order_id=order.id,
                    order_number=order.order_number,
                    line_item_id=item.id,
                    product_name=item.name or item.title or "",
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity or 1,
                    booking_date=item.property_value(BOOKING_DATE_PROPERTY),
                    booking_time=item.property_value(BOOKING_TIME_PROPERTY),
                    customer=customer,
                )
            )
        return bookings

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def today(self) -> date:
        return self.clock.now().replace(tzinfo=timezone.utc).astimezone(self.tz).date()

    def validate(self, booking: Booking) -> list[str]:
        """Return validation errors; an empty list means the booking is valid."""
        errors = []
        if not booking.booking_date:
            errors.append("Booking date is required")
        if not booking.booking_time:
            errors.append("Booking time is required")
        if not booking.product_name:
            errors.append("Product name is required")
        if not booking.customer.email:
            errors.append("Customer email is required")

        if booking.booking_date:
            if not DATE_PATTERN.match(booking.booking_date):
                errors.append("Invalid booking date format. Expected YYYY-MM-DD")
            else:
                try:
                    booking_day = parse_booking_date(booking.booking_date)
                except ValueError:
                    errors.append("Invalid booking date")
                else:
                    if booking_day < self.today():
                        errors.append("Booking date cannot be in the past")

        if booking.booking_time and not TIME_PATTERN.match(booking.booking_time.strip()):
            errors.append("Invalid booking time format. Expected H:MM AM/PM")

        return errors

    # -------------------------------------------------------------------------
    # Calendar events
    # -------------------------------------------------------------------------

    def build_event_request(self, booking: Booking) -> EventRequest:
        start, end = self.availability.session(booking.booking_date, booking.booking_time)
        return EventRequest(
            summary=f"{booking.product_name} - {booking.customer.name}",
            description=self.build_event_description(booking),
            start=start,
            end=end,
            timezone=self.timezone_name,
            metadata={
                "order_id": booking.order_id,
                "order_number": booking.order_number or "",
                "line_item_id": booking.line_item_id or "",
                "source": EVENT_SOURCE,
            },
        )

    @staticmethod
    def build_event_description(booking: Booking) -> str:
        lines = [
            "Session booking",
            f"Order: #{booking.order_number}",
            f"Product: {booking.product_name}",
            f"Customer: {booking.customer.name}",
            f"Email: {booking.customer.email}",
        ]
        if booking.customer.phone:
            lines.append(f"Phone: {booking.customer.phone}")
        if booking.quantity > 1:
            lines.append(f"Quantity: {booking.quantity}")
        lines.extend(["", f"Order ID: {booking.order_id}", "Booked via storefront"])
        return "\n".join(lines)

    async def _existing_event(self, booking: Booking) -> Optional[CalendarEvent]:
        event = await self.calendar.find_event_by_order_id(booking.order_id)
        if event is None or not event.id:
            return None
        line_item_id = event.metadata.get("line_item_id")
        if booking.line_item_id and line_item_id and line_item_id != booking.line_item_id:
            return None
        return event

    async def _delete_events(self, order_id: str, event_ids: list[str]) -> None:
        for event_id in event_ids:
            try:
                await self.calendar.delete_event(event_id)
            except Exception as e:
                logger.error(
                    "Failed to roll back calendar event",
                    order_id=order_id,
                    event_id=event_id,
                    error=str(e),
                )
        if event_ids:
            logger.info("Rolled back calendar events", order_id=order_id, event_ids=event_ids)

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process_booking(
        self, booking: Booking, options: ProcessOptions
    ) -> BookingResult:
        result = BookingResult(
            line_item_id=booking.line_item_id,
            product_name=booking.product_name,
            booking_date=booking.booking_date,
            booking_time=booking.booking_time,
        )

        errors = self.validate(booking)
        if errors:
            return result.fail(FailureCategory.VALIDATION, *errors)

        try:
            if options.force:
                existing = await self._existing_event(booking)
                if existing is not None:
                    result.success = True
                    result.reused_event = True
                    result.calendar_event_id = existing.id
                    result.calendar_event_link = existing.link
                    return result

            if not options.skip_availability_check:
                available = await self.availability.check(
                    booking.booking_date, booking.booking_time, booking.product_name
                )
                if not available:
                    return result.fail(FailureCategory.CONFLICT, "Time slot is not available")

            created = await self.calendar.create_event(self.build_event_request(booking))
        except ConflictError as e:
            return result.fail(FailureCategory.CONFLICT, f"Booking conflict: {e}")
        except ValidationError as e:
            return result.fail(FailureCategory.VALIDATION, f"Booking rejected: {e}")
        except Exception as e:
            logger.warning(
                "Booking failed",
                order_id=booking.order_id,
                line_item_id=booking.line_item_id,
                error=str(e),
            )
            return result.fail(FailureCategory.TRANSIENT, f"Booking error: {e}")

        if not created.success:
            return result.fail(FailureCategory.TRANSIENT, f"Calendar error: {created.error}")

        result.success = True
        result.calendar_event_id = created.event_id
        result.calendar_event_link = created.event_link
        return result

    async def process_order(
        self, order: Order, options: Optional[ProcessOptions] = None
    ) -> OrderResult:
        options = options or ProcessOptions()
        result = OrderResult(order_id=order.id, order_number=order.order_number)
        log = logger.bind(order_id=order.id, order_number=order.order_number)

        if not options.force and await self.ledger.is_processed(order.id):
            result.success = True
            result.skipped = True
            result.message = "Order already processed"
            return result

        if not order.is_paid and not options.allow_unpaid:
            return result.fail(FailureCategory.VALIDATION, "Order is not paid")

        bookings = self.extract_bookings(order)
        if not bookings:
            return result.fail(FailureCategory.VALIDATION, "No booking data found in order")

        created_event_ids: list[str] = []
        snapshots: list[dict[str, Any]] = []
        try:
            for booking in bookings:
                booking_result = await self.process_booking(booking, options)
                result.bookings.append(booking_result)
                if booking_result.success:
                    if booking_result.calendar_event_id and not booking_result.reused_event:
                        created_event_ids.append(booking_result.calendar_event_id)
                    snapshots.append(
                        {**booking.snapshot(), "calendar_event_id": booking_result.calendar_event_id}
                    )
                else:
                    result.errors.extend(booking_result.errors)

            if all(b.success for b in result.bookings):
                recorded = await self.ledger.record(
                    order_id=order.id,
                    order_number=order.order_number,
                    payment_status=order.financial_status,
                    bookings=snapshots,
                    sync_source=options.sync_source,
                )
                if not recorded:
                    # Recorded concurrently; the winner's events stay
                    await self._delete_events(order.id, created_event_ids)
                    result.success = True
                    result.skipped = True
                    result.message = "Order already processed"
                    return result

                result.success = True
                result.message = "Order synchronized"
                log.info("Order synchronized", events=len(result.bookings), source=options.sync_source)
                return result

            result.category = self._order_category(result.bookings)
        except Exception as e:
            log.error("Order sync error", error=str(e), exc_info=True)
            result.fail(FailureCategory.TRANSIENT, f"Sync error: {e}")

        await self._delete_events(order.id, created_event_ids)
        log.warning("Order failed", category=result.category.value, errors=result.errors)

        if options.queue_on_failure and result.category is not FailureCategory.VALIDATION:
            await self.enqueue_failure(order, result)

        return result

    async def enqueue_failure(self, order: Order, result: OrderResult) -> None:
        """Queue the raw order payload for retry and flag the result."""
        await self.retry_queue.enqueue(
            order.id,
            order.model_dump(mode="json"),
            "; ".join(result.errors),
            result.category or FailureCategory.TRANSIENT,
        )
        result.queued_for_retry = True

    @staticmethod
    def _order_category(bookings: list[BookingResult]) -> FailureCategory:
        categories = {b.category for b in bookings if not b.success}
        for category in (
            FailureCategory.VALIDATION,
            FailureCategory.TRANSIENT,
            FailureCategory.CONFLICT,
        ):
            if category in categories:
                return category
        return FailureCategory.TRANSIENT

    # -------------------------------------------------------------------------
    # Locked and batch processing
    # -------------------------------------------------------------------------

    async def process_locked(
        self, order: Order, options: ProcessOptions, owner: Optional[str] = None
    ) -> OrderResult:
        """Process under the per-order lock.

        Raises:
            LockContentionError: if another sync holds this order
        """
        if self.lock is None:
            return await self.process_order(order, options)
        async with self.lock.hold(order_scope(order.id), owner or make_owner_token(), self.lock_ttl):
            return await self.process_order(order, options)

    async def process_batch(
        self,
        orders: list[Order],
        options: Optional[ProcessOptions] = None,
        delay_between_orders: float = 0.0,
        owner: Optional[str] = None,
    ) -> BatchResult:
        """Process orders one at a time, pausing between them."""
        options = options or ProcessOptions()
        owner = owner or make_owner_token()
        batch = BatchResult(total=len(orders))

        for index, order in enumerate(orders):
            try:
                result = await self.process_locked(order, options, owner)
            except LockContentionError as e:
                logger.info("Order busy, skipping", order_id=order.id, holder=e.holder)
                result = OrderResult(
                    order_id=order.id,
                    order_number=order.order_number,
                    skipped=True,
                    message="Order is being synchronized elsewhere",
                )
            except Exception as e:
                logger.error("Order processing error", order_id=order.id, error=str(e))
                result = OrderResult(order_id=order.id, order_number=order.order_number).fail(
                    FailureCategory.TRANSIENT, str(e)
                )
                if options.queue_on_failure:
                    try:
                        await self.enqueue_failure(order, result)
                    except Exception as queue_error:
                        logger.error(
                            "Could not queue failed order",
                            order_id=order.id,
                            error=str(queue_error),
                        )

            batch.order_results.append(result)
            if result.skipped:
                batch.skipped += 1
            else:
                batch.processed += 1
                if result.success:
                    batch.successful += 1
                else:
                    batch.failed += 1

            if delay_between_orders > 0 and index < len(orders) - 1:
                await self.clock.sleep(delay_between_orders)

        return batch
