"""Health check endpoints."""

from fastapi import APIRouter, Request, status
from pydantic import BaseModel

from app.config import settings
from app.core.redis_client import check_redis_connection
from app.database import check_database_connection

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Detailed health check response model."""

    database: str
    redis: str
    expiry_sweeper: str
    mpesa_environment: str


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.

    Returns:
        Basic health status
    """
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Detailed health check",
)
async def detailed_health_check(request: Request) -> DetailedHealthResponse:
    """
    Health of the database, the token cache and the expiry sweeper.

    Redis only backs the M-Pesa token cache, so an unreachable Redis
    leaves the service degraded rather than down.
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()

    sweeper = getattr(request.app.state, "expiry_sweeper", None)
    if sweeper is None or not sweeper.enabled:
        sweeper_status = "disabled"
    else:
        sweeper_status = "running" if sweeper.is_running else "stopped"

    if not db_healthy:
        overall = "unhealthy"
    elif not redis_healthy or sweeper_status == "stopped":
        overall = "degraded"
    else:
        overall = "healthy"

    return DetailedHealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        expiry_sweeper=sweeper_status,
        mpesa_environment=settings.mpesa_environment,
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    """Simple ping endpoint."""
    return {"message": "pong"}
