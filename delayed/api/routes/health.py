"""
Health check routes.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from delayed import __version__
from delayed.db import get_async_session
from delayed.db.repository import JobRepository
from delayed.observability.metrics import get_metrics
from delayed.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and database connection.",
)
async def health_check(
    session: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """
    Perform a health check.

    Checks database connectivity and returns service status.
    """
    db_status = "healthy"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db_status = "unhealthy"

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        version=__version__,
        database=db_status,
        timestamp=datetime.now(UTC),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    """Kubernetes readiness check endpoint."""
    try:
        await session.execute(text("SELECT 1"))
        return {"ready": True}
    except SQLAlchemyError:
        return {"ready": False}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness check endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics, refreshing the queue depth gauges.",
)
async def metrics(
    session: AsyncSession = Depends(get_async_session),
) -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    stats = await JobRepository(session).get_job_stats()
    metrics_collector.update_queue_depth(stats)
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
