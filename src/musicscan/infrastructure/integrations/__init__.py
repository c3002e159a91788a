"""External service integrations."""

from musicscan.infrastructure.integrations.generation_client import GenerationClient

__all__ = ["GenerationClient"]
