"""
Health check endpoint for the scan API.
"""
import time
from datetime import datetime, timezone

from fastapi import APIRouter, status
from pydantic import BaseModel

router = APIRouter(tags=["monitoring"])

START_TIME = time.time()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    uptime_seconds: float
    version: str
    component: str


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.
    Returns 200 OK if the service is running.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=round(time.time() - START_TIME, 2),
        version="2.0.0",
        component="sitescan",
    )
