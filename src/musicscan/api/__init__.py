"""API module for MusicScan.

Structure:
- routers/: batch queue trigger, matrix detection, health
- schemas/: Pydantic models for request/response
- dependencies.py: app.state lookups
- exception_handlers.py: global error handlers ({"error": ...} bodies)
"""

from musicscan.api.routers import api_router, batch, health, matrix

__all__ = [
    "api_router",
    "batch",
    "health",
    "matrix",
]
