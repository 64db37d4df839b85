"""
Health check endpoints.
"""

import time
from datetime import datetime

from fastapi import APIRouter, status
import structlog

from ..config import settings
from ..infrastructure import get_document_store
from ..infrastructure.stores import Collections
from ..models.api_responses import HealthCheckResponse, ReadinessResponse

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


@router.get(
    "/health",
    status_code=status.HTTP_200_OK,
    summary="Basic Health Check",
    description="Returns the basic health status of the API service",
    response_model=HealthCheckResponse,
)
async def health_check() -> HealthCheckResponse:
    """Liveness check used by load balancers and uptime checks."""
    return HealthCheckResponse(
        status="healthy",
        timestamp=datetime.utcnow().isoformat(),
        version=settings.version,
        environment=settings.environment,
        app_name=settings.app_name,
        storage_backend=settings.storage_backend
    )


@router.get(
    "/health/ready",
    status_code=status.HTTP_200_OK,
    summary="Readiness Check",
    description="Verifies the document store answers queries",
    response_model=ReadinessResponse,
)
async def readiness_check() -> ReadinessResponse:
    """
    Issue a cheap read against the document store.

    A failing store surfaces as the store's DatabaseError (HTTP 503).
    """
    started = time.perf_counter()
    await get_document_store().list_document_ids(Collections.KNOWN_USERS)
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    logger.debug("Readiness check passed", storage_response_ms=elapsed_ms)
    return ReadinessResponse(
        status="ready",
        storage_backend=settings.storage_backend,
        storage_response_ms=elapsed_ms
    )
