"""Booking synchronization tasks."""

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from celery import shared_task

from booking_sync.bootstrap import SyncContainer, build_default_container
from booking_sync.config import get_settings
from booking_sync.exceptions import LockContentionError, OrderNotFoundError
from booking_sync.services.results import ProcessOptions
from booking_sync.services.sync_engine import MANUAL_SOURCE

logger = structlog.get_logger()


async def _with_container(action: Callable[[SyncContainer], Awaitable[Any]]) -> Any:
    container = build_default_container(get_settings())
    try:
        return await action(container)
    finally:
        await container.orchestrator.wait_for_stragglers()
        await container.close()


async def _run_sync(container: SyncContainer) -> dict:
    result = await container.orchestrator.run_sync()
    return result.to_dict()


@shared_task(bind=True)
def run_booking_sync(self) -> dict:
    """
    Run one orchestrated booking sync.

    The global sync lock makes overlapping beat triggers skip instead of
    running twice.

    Returns:
        dict: Run status, run id and counters
    """
    logger.info("Starting scheduled booking sync", task_id=self.request.id)
    summary = asyncio.run(_with_container(_run_sync))
    logger.info("Scheduled booking sync finished", status=summary["status"], run_id=summary["run_id"])
    return summary


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def sync_single_order(self, order_id: str, force: bool = False) -> dict:
    """
    Synchronize one order on demand.

    Retries the task later when another sync holds the order.

    Returns:
        dict: The order result
    """
    options = ProcessOptions(force=force, queue_on_failure=True, sync_source=MANUAL_SOURCE)

    async def _sync(container: SyncContainer) -> dict:
        result = await container.engine.sync_order(order_id, options)
        return result.to_dict()

    try:
        return asyncio.run(_with_container(_sync))
    except OrderNotFoundError as e:
        logger.warning("Order not found", order_id=order_id)
        return {"order_id": order_id, "success": False, "errors": [str(e)]}
    except LockContentionError as e:
        logger.info("Order busy, retrying later", order_id=order_id, holder=e.holder)
        raise self.retry(exc=e)
