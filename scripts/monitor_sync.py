#!/usr/bin/env python3
"""Print sync state, metrics, lock staleness and unresolved retry entries."""

import argparse
import asyncio
from typing import Any

import orjson

from booking_sync.clock import SystemClock
from booking_sync.config import get_settings
from booking_sync.infrastructure.database.connection import (
    create_engine_from_settings,
    create_session_factory,
)
from booking_sync.infrastructure.database.models import GLOBAL_SYNC_SCOPE
from booking_sync.services.locking import PersistentLock
from booking_sync.services.retry_queue import RetryQueue
from booking_sync.services.sync_state import SyncStateStore, classify_health


async def collect(limit: int) -> dict[str, Any]:
    settings = get_settings()
    engine = create_engine_from_settings(settings)
    factory = create_session_factory(engine)
    clock = SystemClock()

    try:
        state_store = SyncStateStore(factory, clock)
        lock = PersistentLock(factory, clock, max_age=settings.max_sync_duration)
        retry_queue = RetryQueue(factory, clock, max_retries=settings.max_retries)

        state = await state_store.get_state()
        metrics = await state_store.get_metrics()
        lock_state = await lock.read(GLOBAL_SYNC_SCOPE)
        entries = await retry_queue.pending(limit)
        errors = await state_store.recent_errors(limit)
        now = clock.now()
    finally:
        await engine.dispose()

    return {
        "state": {
            "status": state.status,
            "run_id": state.run_id,
            "started_at": state.started_at,
            "completed_at": state.completed_at,
            "checkpoint": state.last_sync_time,
            "processed": state.orders_processed,
            "successful": state.orders_successful,
            "failed": state.orders_failed,
            "skipped": state.orders_skipped,
            "error": state.error_message,
        },
        "metrics": {
            "total_syncs": metrics.total_syncs,
            "success_rate": metrics.success_rate,
            "health": classify_health(metrics),
            "total_orders": metrics.total_orders,
            "average_sync_duration_ms": metrics.average_sync_duration_ms,
            "last_sync_at": metrics.last_sync_at,
        },
        "lock": {
            "locked": lock_state.locked,
            "owner": lock_state.owner,
            "age_seconds": lock_state.age_seconds(now),
            "stale": lock_state.is_stale(now, settings.max_sync_duration),
        },
        "retry_queue": [
            {
                "order_id": entry.order_id,
                "category": entry.failure_category,
                "retry_count": entry.retry_count,
                "exhausted": entry.exhausted,
                "next_retry_at": entry.next_retry_at,
                "reason": entry.failure_reason,
            }
            for entry in entries
        ],
        "recent_errors": [
            {"context": e.context, "error": e.error, "occurred_at": e.occurred_at}
            for e in errors
        ],
    }


def print_report(report: dict[str, Any]) -> None:
    state, metrics, lock = report["state"], report["metrics"], report["lock"]

    print(f"\n{'=' * 70}")
    print("BOOKING SYNC - STATUS")
    print(f"{'=' * 70}")
    print(f"Status     : {state['status']} (run {state['run_id'] or '-'})")
    print(f"Checkpoint : {state['checkpoint'] or '-'}")
    print(
        f"Last run   : {state['processed']} processed, {state['successful']} ok, "
        f"{state['failed']} failed, {state['skipped']} skipped"
    )
    if state["error"]:
        print(f"Error      : {state['error']}")
    print(
        f"Health     : {metrics['health']} ({metrics['success_rate']}% of "
        f"{metrics['total_syncs']} runs)"
    )
    print(f"Avg run    : {metrics['average_sync_duration_ms'] or 0}ms")

    if lock["locked"]:
        age = lock["age_seconds"] or 0
        flag = " STALE" if lock["stale"] else ""
        print(f"Lock       : held by {lock['owner']} for {age:.0f}s{flag}")
    else:
        print("Lock       : free")

    print(f"\nUnresolved retries: {len(report['retry_queue'])}")
    for entry in report["retry_queue"]:
        marker = "EXHAUSTED" if entry["exhausted"] else f"next {entry['next_retry_at']}"
        print(f"  {entry['order_id']} [{entry['category']}] x{entry['retry_count']} {marker}")
        if entry["reason"]:
            print(f"    {entry['reason']}")

    if report["recent_errors"]:
        print("\nRecent errors:")
        for error in report["recent_errors"]:
            print(f"  {error['occurred_at']} [{error['context']}] {error['error']}")
    print()


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect booking sync state")
    parser.add_argument("--limit", type=int, default=20, help="Retry entries and errors to show")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a report")
    args = parser.parse_args()

    report = asyncio.run(collect(args.limit))
    if args.json:
        print(orjson.dumps(report, option=orjson.OPT_INDENT_2).decode())
    else:
        print_report(report)


if __name__ == "__main__":
    main()
