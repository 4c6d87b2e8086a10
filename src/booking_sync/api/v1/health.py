"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from booking_sync import __version__
from booking_sync.api.dependencies import get_container
from booking_sync.bootstrap import SyncContainer
from booking_sync.infrastructure.database.connection import ping

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str
    timestamp: str
    dependencies: dict[str, Any]


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    ready: bool
    checks: dict[str, bool]


@router.get("/health", response_model=HealthResponse)
async def health_check(
    container: Annotated[SyncContainer, Depends(get_container)],
) -> HealthResponse:
    """
    Basic health check endpoint.

    Returns the service status, version and the health of recent sync runs.
    """
    metrics = await container.state.get_metrics()

    return HealthResponse(
        status="healthy",
        version=__version__,
        environment=container.settings.app_env,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies={
            "database": "configured",
            "sync": container.orchestrator.health(metrics),
        },
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(
    container: Annotated[SyncContainer, Depends(get_container)],
) -> ReadinessResponse:
    """
    Readiness check endpoint.

    Verifies that the database answers queries.
    This endpoint is used by Kubernetes readiness probes.
    """
    checks = {"database": await ping(container.session_factory)}

    return ReadinessResponse(
        ready=all(checks.values()),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """
    Liveness check endpoint.

    Simple endpoint that returns 200 if the service is running.
    """
    return {"status": "alive"}
