"""FastAPI application entry point."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booking_sync import __version__
from booking_sync.api.v1.router import api_router
from booking_sync.bootstrap import SyncContainer, build_default_container
from booking_sync.config import get_settings
from booking_sync.logging_config import configure_logging
from booking_sync.middleware.timing import TimingMiddleware

configure_logging(get_settings())

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    container: SyncContainer = app.state.container
    settings = container.settings
    logger.info(
        "Starting booking sync service",
        app_env=settings.app_env,
        debug=settings.debug,
        sync_enabled=settings.sync_enabled,
    )

    scheduler = None
    scheduler_task: Optional[asyncio.Task] = None
    if settings.sync_enabled:
        scheduler = container.scheduler()
        scheduler_task = asyncio.create_task(scheduler.run_forever())

    yield

    if scheduler is not None:
        scheduler.stop()
        await scheduler_task
    await container.orchestrator.wait_for_stragglers()
    await container.close()
    logger.info("Shutting down booking sync service")


def create_app(container: Optional[SyncContainer] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = container.settings if container else get_settings()

    app = FastAPI(
        title="Booking Sync API",
        description="Synchronizes paid storefront booking orders into the studio calendar",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container or build_default_container(settings)

    app.add_middleware(TimingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    return app


def run() -> None:
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "booking_sync.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
    )


if __name__ == "__main__":
    run()
