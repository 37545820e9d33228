"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskqueue import __version__
from taskqueue.api.routes import admin_router, health_router, jobs_router, tick_router
from taskqueue.config import get_settings
from taskqueue.db import close_db, get_engine, init_db
from taskqueue.observability.logging import setup_logging
from taskqueue.observability.metrics import setup_metrics
from taskqueue.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)
from taskqueue.services import QueueServices, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the shared services on startup unless they were injected.
    """
    setup_logging()
    setup_metrics()
    setup_tracing()

    owns_database = app.state.services is None
    if owns_database:
        session_factory = await init_db()
        instrument_sqlalchemy(get_engine())
        app.state.services = build_services(session_factory)

    logger.info("Application started")

    yield

    if owns_database:
        await close_db()
        app.state.services = None
    logger.info("Application shutdown")


def create_app(services: QueueServices | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Pre-built services; when omitted they are built from
            settings at startup.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Task Queue API",
        description="Persistent job queue with dead letters, TTL cache and cron-driven ticks",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(tick_router)
    app.include_router(admin_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "taskqueue.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
