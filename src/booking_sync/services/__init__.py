"""Synchronization services."""

from booking_sync.services.conflict_detector import AvailabilityChecker
from booking_sync.services.locking import PersistentLock
from booking_sync.services.order_processor import OrderProcessor
from booking_sync.services.orchestrator import SyncOrchestrator, SyncScheduler
from booking_sync.services.processed_orders import ProcessedOrderLedger
from booking_sync.services.retry_queue import BackoffPolicy, RetryQueue
from booking_sync.services.sync_engine import SyncEngine
from booking_sync.services.sync_state import SyncStateStore

__all__ = [
    "AvailabilityChecker",
    "BackoffPolicy",
    "OrderProcessor",
    "PersistentLock",
    "ProcessedOrderLedger",
    "RetryQueue",
    "SyncEngine",
    "SyncOrchestrator",
    "SyncScheduler",
    "SyncStateStore",
]
