"""Application settings loaded from environment variables and .env files."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_", env_file=".env", extra="ignore"
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./musicscan.db",
        description="SQLAlchemy async database URL",
    )
    echo: bool = Field(default=False, description="Log every SQL statement")
    pool_pre_ping: bool = Field(default=True)
    # Pool settings only apply to PostgreSQL - SQLite ignores them
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    pool_timeout: int = Field(default=30, ge=1)
    pool_recycle: int = Field(default=3600, ge=-1)


# Hey future me - these knobs drive the batch queue tick handler! Defaults: 3 attempts
# per item, one tick per minute. worker_timeout_seconds caps a single worker call so a
# hanging AI request can never hold a tick (and its item) forever.
class BatchSettings(BaseSettings):
    """Batch queue processing settings."""

    model_config = SettingsConfigDict(
        env_prefix="BATCH_", env_file=".env", extra="ignore"
    )

    default_max_attempts: int = Field(default=3, ge=1, le=10)
    worker_timeout_seconds: float = Field(default=300.0, gt=0)
    # PROCESSING items untouched for worker_timeout_seconds + this grace were abandoned
    # by a crashed or restarted process and get reclaimed on the next tick
    abandoned_grace_seconds: float = Field(default=120.0, ge=0)
    stale_heartbeat_seconds: int = Field(default=900, ge=60)
    tick_interval_seconds: int = Field(default=60, ge=5)
    tick_worker_enabled: bool = Field(default=False)
    tick_process_types: list[str] = Field(
        default_factory=lambda: [
            "blog_generation",
            "composer_story_generation",
            "artist_stories",
        ]
    )
    insert_chunk_size: int = Field(default=100, ge=1)


class GenerationSettings(BaseSettings):
    """Settings for the external content-generation functions."""

    model_config = SettingsConfigDict(
        env_prefix="GENERATION_", env_file=".env", extra="ignore"
    )

    base_url: str = Field(default="http://localhost:54321")
    api_key: str = Field(default="")
    timeout_seconds: float = Field(default=120.0, gt=0)

    @property
    def is_configured(self) -> bool:
        """Check whether an API key is present."""
        return bool(self.api_key.strip())


class ObservabilitySettings(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    log_level: str = Field(default="INFO")
    log_json_format: bool = Field(default=False)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        value_up = str(value).upper()
        allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        if value_up not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(allowed)}")
        return value_up


class ApiSettings(BaseSettings):
    """HTTP server settings."""

    model_config = SettingsConfigDict(
        env_prefix="API_", env_file=".env", extra="ignore"
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class Settings(BaseSettings):
    """Root settings object composed of the per-area sections."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = Field(default="MusicScan")
    debug: bool = Field(default=False)

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    def _get_sqlite_db_path(self) -> Path | None:
        """Return the SQLite file path, or None for non-file databases."""
        url = self.database.url
        if not url.startswith("sqlite"):
            return None
        _, _, path = url.partition(":///")
        if not path or path.startswith(":memory:"):
            return None
        return Path(path)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings singleton."""
    return Settings()
