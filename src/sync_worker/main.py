"""Celery application for the booking sync worker."""

from celery import Celery

from booking_sync.config import get_settings
from booking_sync.logging_config import configure_logging

settings = get_settings()
configure_logging(settings)

# Create Celery app
app = Celery(
    "sync_worker",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
    include=[
        "sync_worker.tasks.sync_bookings",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Hard limits above the orchestrator deadline
    task_time_limit=settings.max_sync_duration + 120,
    task_soft_time_limit=settings.max_sync_duration + 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="sync",
    task_routes={
        "sync_worker.tasks.*": {"queue": "sync"},
    },
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    "sync-bookings": {
        "task": "sync_worker.tasks.sync_bookings.run_booking_sync",
        "schedule": float(settings.sync_interval),
    },
}


def run() -> None:
    """Run the Celery worker."""
    app.worker_main(["worker", "--loglevel=info", "-Q", "sync"])


if __name__ == "__main__":
    run()
