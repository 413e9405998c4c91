"""Health, readiness and service information endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.dependencies import get_db
from ..core.observability import SERVICE_NAME, SERVICE_VERSION
from ..schemas.health import HealthResponse, HealthStatus, ReadinessResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

DB_DEPENDENCY = Depends(get_db)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check if the service is up and responsive",
)
async def health_check() -> JSONResponse:
    response_data = HealthResponse(
        status=HealthStatus.HEALTHY,
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        environment=settings.environment,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness Check",
    description="Check that the local store answers and the collaborators were started",
)
async def readiness_check(request: Request, db: AsyncSession = DB_DEPENDENCY) -> JSONResponse:
    """
    Readiness check.

    Returns 503 with the failing checks when the local store cannot be
    queried or startup has not wired the backend client.
    """
    checks = {}
    try:
        await db.execute(text("SELECT 1"))
        checks["local_store"] = "ok"
    except SQLAlchemyError as e:
        logger.warning("Readiness check failed for local store", extra={"error": str(e)})
        checks["local_store"] = "unavailable"

    checks["backend"] = "ok" if getattr(request.app.state, "backend", None) is not None else "not initialised"

    ready = all(result == "ok" for result in checks.values())
    response_data = ReadinessResponse(
        status=HealthStatus.READY if ready else HealthStatus.NOT_READY,
        service=SERVICE_NAME,
        checks=checks,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response_data.model_dump(mode="json"),
    )


@router.get(
    "/info",
    tags=["Info"],
    summary="Service Information",
    description="Get detailed information about the service",
    response_model=dict,
)
async def service_info():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": "Marketplace backend: refunds, escrow, notifications, receipts, shipping, inventory and recurring bookings",
        "environment": settings.environment,
        "debug": settings.debug,
        "features": {
            "authentication": True,
            "idempotency": True,
            "tracing": True,
            "problem_details": True,
            "workers": settings.workers_enabled,
        },
        "endpoints": {
            "health": "/health",
            "readiness": "/ready",
            "info": "/info",
            "metrics": "/metrics",
            "functions": "/functions/v1",
            "docs": "/docs" if settings.debug else None,
        },
    }
