"""Celery worker for periodic booking synchronization."""
