"""FastAPI application factory.

Run with:
    uvicorn musicscan.main:app --host 0.0.0.0 --port 8000
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from musicscan.api.exception_handlers import register_exception_handlers
from musicscan.api.routers import api_router
from musicscan.config import Settings, get_settings
from musicscan.infrastructure.lifecycle import lifespan
from musicscan.infrastructure.observability import RequestLoggingMiddleware


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of the cached environment settings (tests)

    Returns:
        Configured FastAPI app; resources are created in the lifespan
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Batch queue for AI content generation and CD scan helpers",
        version="1.0.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Middleware order: last added runs first, so request logging wraps CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials="*" not in settings.api.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    return app


app = create_app()
