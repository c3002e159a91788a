"""Configuration module for MusicScan."""

from .settings import (
    ApiSettings,
    BatchSettings,
    DatabaseSettings,
    GenerationSettings,
    ObservabilitySettings,
    Settings,
    get_settings,
)

__all__ = [
    "ApiSettings",
    "BatchSettings",
    "DatabaseSettings",
    "GenerationSettings",
    "ObservabilitySettings",
    "Settings",
    "get_settings",
]
