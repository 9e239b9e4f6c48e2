"""Health check and system info routes."""

import logging

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from langloop import __version__
from langloop.api.deps import get_services
from langloop.config import get_settings
from langloop.schemas.schemas import HealthResponse, QueueStatsResponse
from langloop.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["System"])

settings = get_settings()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check(services: Services = Depends(get_services)):
    """
    Health check endpoint.

    Returns the status of:
    - Database connection
    - Redis connection (work log)
    """
    redis_status = "ok"
    try:
        await services.redis.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Redis health check failed: {e}")
        redis_status = "error"

    db_status = "ok"
    try:
        async with services.store.session_factory() as db:
            await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = "error"

    overall_status = "healthy"
    if any(s == "error" for s in [redis_status, db_status]):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        database=db_status,
        redis=redis_status,
    )


@router.get(
    "/v1/queue/stats",
    response_model=QueueStatsResponse,
    summary="Work log statistics",
    description="Stream length and pending entries per consumer of the durable work log.",
)
async def queue_stats(services: Services = Depends(get_services)):
    stats = await services.work_log.stats()
    return QueueStatsResponse(
        processing_mode=services.settings.processing_mode,
        stream_length=stats.stream_length,
        total_pending=stats.total_pending,
        consumers=stats.consumers,
    )


@router.get(
    "/v1/info",
    summary="Service information",
    description="Get general information about the service.",
)
async def service_info():
    """Get service information."""
    return {
        "name": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "processing_mode": settings.processing_mode,
        "default_max_iterations": settings.default_max_iterations,
        "default_confidence_threshold": settings.default_confidence_threshold,
        "documentation": "/docs",
        "redoc": "/redoc",
    }
