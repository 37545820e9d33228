"""
Health check routes.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from taskqueue import __version__
from taskqueue.api.dependencies import Services
from taskqueue.clock import utcnow
from taskqueue.db.connection import session_scope
from taskqueue.observability.metrics import get_metrics
from taskqueue.services import QueueServices
from taskqueue.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _database_reachable(services: QueueServices) -> bool:
    try:
        async with session_scope(services.session_factory) as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database check failed", extra={"error": str(e)})
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and database connection.",
)
async def health_check(services: Services) -> HealthResponse:
    """
    Perform a health check.

    Checks database connectivity and returns service status.
    """
    healthy = await _database_reachable(services)

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        database="healthy" if healthy else "unhealthy",
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(services: Services) -> dict:
    """Kubernetes readiness probe endpoint."""
    return {"ready": await _database_reachable(services)}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
