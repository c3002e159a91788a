"""Application lifecycle management for startup and shutdown tasks.

Startup order:
1. logging
2. SQLite directory check
3. Database + tables
4. GenerationClient + worker registry + BatchQueueProcessor (on app.state)
5. BatchTickWorker task, only when BATCH_TICK_WORKER_ENABLED=true

Shutdown runs in reverse and never aborts halfway - each step logs its own failure.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from musicscan.application.workers import (
    BatchQueueProcessor,
    WorkerRegistry,
    create_batch_tick_worker,
    create_content_workers,
)
from musicscan.config import Settings, get_settings
from musicscan.domain.exceptions import ConfigurationError
from musicscan.infrastructure.integrations import GenerationClient
from musicscan.infrastructure.observability import configure_logging
from musicscan.infrastructure.persistence import Database, create_repository_scope

logger = logging.getLogger(__name__)

WORKER_SHUTDOWN_TIMEOUT_SECONDS = 10.0


# Hey future me, SQLite won't create missing parent directories - "unable to open database
# file" at the first query is all you'd get. Create them here so a fresh DATABASE_URL like
# sqlite+aiosqlite:///./data/musicscan.db just works.
def _validate_sqlite_path(settings: Settings) -> None:
    """Ensure the SQLite database directory exists.

    Raises:
        ConfigurationError: If the directory can't be created
    """
    db_path = settings._get_sqlite_db_path()
    if db_path is None:
        return

    try:
        if db_path.parent and str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured SQLite parent directory exists: %s", db_path.parent)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{db_path.parent}': {exc}. "
            "Update DATABASE_URL or adjust directory permissions."
        ) from exc


def _resolve_settings(app: FastAPI) -> Settings:
    settings = getattr(app.state, "settings", None)
    return settings if settings is not None else get_settings()


# Listen future me, everything before `yield` runs at STARTUP, everything after at SHUTDOWN.
# Resources go on app.state so dependencies.py can hand them to routes.
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = _resolve_settings(app)

    configure_logging(
        log_level=settings.observability.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name.lower(),
    )
    logger.info("Starting application: %s", settings.app_name)

    db: Database | None = None
    client: GenerationClient | None = None
    tick_task: asyncio.Task[None] | None = None
    try:
        _validate_sqlite_path(settings)

        db = Database(settings)
        await db.create_tables()
        app.state.db = db
        logger.info("Database initialized: %s", settings.database.url)

        client = GenerationClient(settings.generation)
        if not settings.generation.is_configured:
            logger.warning(
                "GENERATION_API_KEY not set - generation functions at %s will be "
                "called without authorization",
                settings.generation.base_url,
            )

        registry = WorkerRegistry(create_content_workers(client))
        processor = BatchQueueProcessor(
            repository_scope=create_repository_scope(db),
            registry=registry,
            settings=settings.batch,
        )
        app.state.generation_client = client
        app.state.batch_processor = processor
        logger.info("Batch processor ready for: %s", ", ".join(registry.process_types()))

        if settings.batch.tick_worker_enabled:
            tick_worker = create_batch_tick_worker(
                processor,
                process_types=settings.batch.tick_process_types,
                interval_seconds=settings.batch.tick_interval_seconds,
            )
            tick_task = asyncio.create_task(tick_worker.start())
            app.state.batch_tick_worker = tick_worker
            logger.info(
                "Batch tick worker started (every %ss)", settings.batch.tick_interval_seconds
            )
        else:
            logger.info("Batch tick worker disabled - waiting for external tick triggers")

        yield

    except Exception as e:
        logger.exception("Error during application startup: %s", e)
        raise
    finally:
        logger.info("Shutting down application")

        # 1. Tick worker first so no tick starts against a closing DB
        tick_worker = getattr(app.state, "batch_tick_worker", None)
        if tick_worker is not None and tick_task is not None:
            tick_worker.stop()
            try:
                await asyncio.wait_for(tick_task, timeout=WORKER_SHUTDOWN_TIMEOUT_SECONDS)
            except TimeoutError:
                tick_task.cancel()
                with suppress(asyncio.CancelledError):
                    await tick_task
            except Exception as e:
                logger.exception("Error stopping batch tick worker: %s", e)
            logger.info("Batch tick worker stopped")

        # 2. HTTP client
        if client is not None:
            try:
                await client.close()
            except Exception as e:
                logger.exception("Error closing generation client: %s", e)

        # 3. Database
        if db is not None:
            try:
                await db.close()
                logger.info("Database connection closed")
            except Exception as e:
                logger.exception("Error closing database: %s", e)
