"""Health check endpoints.

Accessible without authentication so load balancers can poll them.
"""

from typing import Any

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from sessionguard.core import check_db_connection, settings
from sessionguard.services.audit import get_audit_logger

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(response: Response) -> HealthResponse:
    """
    Health check endpoint.

    Returns 503 if the database is unavailable.
    """
    db_healthy = await check_db_connection()

    # Set appropriate status code for container orchestration
    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if db_healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
    )


@router.get("/health/services")
async def service_health(response: Response) -> dict[str, Any]:
    """Database status plus the audit write backlog."""
    db_healthy = await check_db_connection()
    pending = get_audit_logger().pending_count

    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "healthy" if db_healthy else "degraded",
        "services": {
            "database": {
                "status": "connected" if db_healthy else "disconnected",
                "healthy": db_healthy,
            },
            "audit": {"pending_events": pending},
        },
    }
