"""API router initialization."""

# Hey future me, this is the MAIN API router aggregator! main.py mounts it at /api, so
# the batch router's "/batch" prefix ends up as /api/batch/{process_type}/tick.

from fastapi import APIRouter

from musicscan.api.routers import batch, health, matrix

api_router = APIRouter()

api_router.include_router(batch.router, tags=["Batch Queue"])
api_router.include_router(matrix.router, tags=["Matrix Detection"])
api_router.include_router(health.router, prefix="/health", tags=["Health"])

__all__ = [
    "api_router",
    "batch",
    "health",
    "matrix",
]
