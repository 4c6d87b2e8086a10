"""Sync control and inspection endpoints."""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from booking_sync.api.dependencies import get_container
from booking_sync.bootstrap import SyncContainer
from booking_sync.exceptions import LockContentionError, OrderNotFoundError
from booking_sync.services.results import ProcessOptions
from booking_sync.services.sync_engine import MANUAL_SOURCE

router = APIRouter()


# =============================================================================
# Request and Response Models
# =============================================================================


class SyncStatusResponse(BaseModel):
    """Current run state, cumulative metrics and lock holder."""

    state: dict[str, Any]
    metrics: dict[str, Any]
    health: str
    lock: dict[str, Any]
    pending_retries: int


class SyncRunResponse(BaseModel):
    """Outcome of a triggered run."""

    status: str
    run_id: str | None = None
    error: str | None = None
    stats: dict[str, Any] | None = None


class SyncOrderRequest(BaseModel):
    """Options for synchronizing a single order."""

    force: bool = Field(False, description="Process even if the order was already synchronized")
    allow_unpaid: bool = Field(False, description="Accept orders that are not paid")
    skip_availability_check: bool = Field(False, description="Create events without checking the slot")
    queue_on_failure: bool = Field(False, description="Queue the order for retry when it fails")


class SyncOrderResponse(BaseModel):
    """Result of synchronizing one order."""

    order_id: str
    order_number: str | None = None
    success: bool
    skipped: bool
    message: str | None = None
    queued_for_retry: bool
    bookings: list[dict[str, Any]]
    errors: list[str]
    category: str | None = None


class RetryEntryResponse(BaseModel):
    """One unresolved retry queue entry."""

    order_id: str
    failure_reason: str | None
    failure_category: str | None
    retry_count: int
    max_retries: int
    exhausted: bool
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    created_at: datetime | None


class RetryQueueResponse(BaseModel):
    """Unresolved retry queue entries."""

    total: int
    entries: list[RetryEntryResponse]


class RetryRequest(BaseModel):
    """Orders to retry now; all due entries when omitted."""

    order_ids: list[str] | None = Field(None, max_length=100)


class RetryResponse(BaseModel):
    """Counts from a manual retry pass."""

    attempted: int
    successful: int
    failed: int


class ProcessedOrderResponse(BaseModel):
    order_id: str
    order_number: str | None
    calendar_event_id: str | None
    sync_source: str | None
    processed_at: datetime
    bookings: list[dict[str, Any]]


class SyncErrorResponse(BaseModel):
    context: str
    run_id: str | None
    error: str
    occurred_at: datetime


class SyncHistoryResponse(BaseModel):
    """Recently synchronized orders and recent run-level errors."""

    processed_orders: list[ProcessedOrderResponse]
    errors: list[SyncErrorResponse]


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    container: Annotated[SyncContainer, Depends(get_container)],
) -> SyncStatusResponse:
    """Return run state, cumulative metrics, health and lock holder."""
    return SyncStatusResponse(**await container.orchestrator.status())


@router.post("/run", response_model=SyncRunResponse)
async def trigger_sync(
    container: Annotated[SyncContainer, Depends(get_container)],
) -> SyncRunResponse:
    """
    Run a full sync now.

    Returns status ``skipped`` when another run holds the sync lock.
    """
    result = await container.orchestrator.run_sync()
    return SyncRunResponse(**result.to_dict())


@router.post("/orders/{order_id}", response_model=SyncOrderResponse)
async def sync_order(
    order_id: str,
    container: Annotated[SyncContainer, Depends(get_container)],
    request: SyncOrderRequest | None = None,
) -> SyncOrderResponse:
    """
    Synchronize one order on demand.

    Responds 404 for unknown orders, 409 when the order is being synchronized
    elsewhere and 400 with the failure category when processing fails.
    """
    request = request or SyncOrderRequest()
    options = ProcessOptions(
        force=request.force,
        allow_unpaid=request.allow_unpaid,
        skip_availability_check=request.skip_availability_check,
        queue_on_failure=request.queue_on_failure,
        sync_source=MANUAL_SOURCE,
    )

    try:
        result = await container.engine.sync_order(order_id, options)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LockContentionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not result.success:
        raise HTTPException(
            status_code=400,
            detail={
                "code": result.category.value if result.category else "error",
                "errors": result.errors,
                "queued_for_retry": result.queued_for_retry,
            },
        )

    return SyncOrderResponse(**result.to_dict())


@router.get("/retry-queue", response_model=RetryQueueResponse)
async def get_retry_queue(
    container: Annotated[SyncContainer, Depends(get_container)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> RetryQueueResponse:
    """List unresolved retry entries, exhausted ones included."""
    entries = await container.retry_queue.pending(limit)
    total = await container.retry_queue.count_pending()

    return RetryQueueResponse(
        total=total,
        entries=[
            RetryEntryResponse(
                order_id=entry.order_id,
                failure_reason=entry.failure_reason,
                failure_category=entry.failure_category,
                retry_count=entry.retry_count,
                max_retries=entry.max_retries,
                exhausted=entry.exhausted,
                next_retry_at=entry.next_retry_at,
                last_attempt_at=entry.last_attempt_at,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )


@router.post("/retry", response_model=RetryResponse)
async def retry_orders(
    container: Annotated[SyncContainer, Depends(get_container)],
    request: RetryRequest | None = None,
) -> RetryResponse:
    """Retry due entries, or the named orders regardless of schedule."""
    order_ids = request.order_ids if request else None
    stats = await container.engine.retry_orders(order_ids)

    return RetryResponse(
        attempted=stats.retries_attempted,
        successful=stats.retries_successful,
        failed=stats.retries_failed,
    )


@router.get("/history", response_model=SyncHistoryResponse)
async def get_sync_history(
    container: Annotated[SyncContainer, Depends(get_container)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> SyncHistoryResponse:
    """Recently synchronized orders and run-level errors, newest first."""
    processed = await container.ledger.recent(limit)
    errors = await container.state.recent_errors(limit)

    return SyncHistoryResponse(
        processed_orders=[
            ProcessedOrderResponse(
                order_id=record.order_id,
                order_number=record.order_number,
                calendar_event_id=record.calendar_event_id,
                sync_source=record.sync_source,
                processed_at=record.processed_at,
                bookings=record.bookings or [],
            )
            for record in processed
        ],
        errors=[
            SyncErrorResponse(
                context=error.context,
                run_id=error.run_id,
                error=error.error,
                occurred_at=error.occurred_at,
            )
            for error in errors
        ],
    )
