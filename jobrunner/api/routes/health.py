"""
Health check routes.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import Response

from jobrunner import __version__
from jobrunner.api.deps import System
from jobrunner.clock import utcnow
from jobrunner.exceptions import StoreUnavailableError
from jobrunner.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _store_reachable(system: System) -> bool:
    try:
        await system.store.count_active_leases()
    except StoreUnavailableError as e:
        logger.warning(f"Health check could not reach job store: {e}")
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and job store.",
)
async def health_check(system: System) -> HealthResponse:
    """
    Perform a health check.

    Returns:
        HealthResponse with service status.
    """
    healthy = await _store_reachable(system)
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
async def readiness_check(system: System) -> dict:
    """Kubernetes readiness probe endpoint."""
    return {"ready": await _store_reachable(system)}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(system: System) -> Response:
    """
    Expose Prometheus metrics.

    Queue gauges are refreshed from the store on every scrape.
    """
    try:
        await system.queue.stats()
    except StoreUnavailableError as e:
        logger.warning(f"Could not refresh queue gauges: {e}")

    metrics_collector = system.metrics
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
