"""
Health Routes
=============

FastAPI routes for health check endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Request
import psutil

from ssr_gateway.config.logging import get_logger
from ssr_gateway.models.schemas import HealthStatus

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


def get_memory_usage() -> Optional[float]:
    """Resident memory of the server process in MB."""
    try:
        return round(psutil.Process().memory_info().rss / (1024 * 1024), 2)
    except psutil.Error:
        return None


@router.get("/health", response_model=HealthStatus)
async def health_check(request: Request) -> HealthStatus:
    """
    Get application health status.

    Reports sandbox pool and module cache counters. The status is
    ``degraded`` while every sandbox context is busy and ``unhealthy``
    once the gateway has been closed.
    """
    gateway = request.app.state.gateway
    settings = request.app.state.settings

    pool_stats = gateway.pool_stats()
    if gateway.closed or pool_stats.closed:
        status = "unhealthy"
    elif pool_stats.busy >= pool_stats.size:
        status = "degraded"
    else:
        status = "healthy"

    health_status = HealthStatus(
        status=status,
        version=settings.app_version,
        source_dir=str(gateway.source_dir),
        sandbox_pool=pool_stats,
        module_cache=gateway.cache_stats(),
        memory_usage=get_memory_usage(),
    )

    logger.debug("Health check completed", status=status, busy=pool_stats.busy)
    return health_status
