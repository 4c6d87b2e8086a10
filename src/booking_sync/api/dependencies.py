"""FastAPI dependencies."""

from fastapi import Request

from booking_sync.bootstrap import SyncContainer


def get_container(request: Request) -> SyncContainer:
    """The service container attached to the application at startup."""
    return request.app.state.container
