"""Health check endpoints for Docker probes and the admin dashboard."""

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from musicscan.infrastructure.persistence.retry import DatabaseLockMetrics

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Overall health status response."""

    status: str = Field(description="healthy or unhealthy")
    timestamp: str = Field(description="ISO timestamp of health check")
    checks: dict[str, Any] = Field(
        default_factory=dict, description="Individual component checks"
    )


class LivenessStatus(BaseModel):
    """Simple liveness probe response."""

    status: str = Field(description="alive")
    timestamp: str = Field(description="ISO timestamp")


@router.get("/live", response_model=LivenessStatus)
async def liveness_probe() -> LivenessStatus:
    """Liveness probe - 200 while the process runs, no dependency checks."""
    return LivenessStatus(status="alive", timestamp=datetime.now(UTC).isoformat())


@router.get("", response_model=HealthStatus)
async def health_check(request: Request) -> JSONResponse:
    """Database connectivity, lock statistics and tick worker state.

    Returns 200 when the database answers, 503 otherwise.
    """
    checks: dict[str, Any] = {}

    db = getattr(request.app.state, "db", None)
    if db is None:
        db_ok = False
        checks["database"] = {"status": "error", "connected": False, "error": "Not initialized"}
    else:
        db_ok = await db.ping()
        checks["database"] = {"status": "ok" if db_ok else "error", "connected": db_ok}
    checks["database"]["locks"] = DatabaseLockMetrics.get_instance().get_stats()

    tick_worker = getattr(request.app.state, "batch_tick_worker", None)
    checks["batch_tick_worker"] = (
        tick_worker.get_stats() if tick_worker is not None else {"running": False, "enabled": False}
    )

    response = HealthStatus(
        status="healthy" if db_ok else "unhealthy",
        timestamp=datetime.now(UTC).isoformat(),
        checks=checks,
    )
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    if not db_ok:
        logger.warning("Health check failed: database unreachable")
    return JSONResponse(content=response.model_dump(), status_code=status_code)
