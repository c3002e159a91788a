"""Batch workers that turn one queue item into one generation function call.

Hey future me - these are THIN adapters! The real work (prompting the AI, writing the
blog post / story rows) happens in the generation functions. Each worker only:
1. checks the metadata it needs (missing → PoisonPayloadError, no HTTP call)
2. builds the request body
3. calls GenerationClient.invoke(), which maps HTTP failures to poison/transient

| process_type              | item_type      | metadata          | function                |
|---------------------------|----------------|-------------------|-------------------------|
| blog_generation           | blog_post      | artist, title     | plaat-verhaal-generator |
| composer_story_generation | composer_story | composer_name     | generate-composer-story |
| artist_stories            | artist_story   | artist_name       | generate-artist-story   |
"""

import logging
from typing import Any

from musicscan.domain.entities import INCOMPLETE_METADATA, WorkItem
from musicscan.domain.exceptions import PoisonPayloadError
from musicscan.domain.ports import IBatchWorker
from musicscan.infrastructure.integrations.generation_client import GenerationClient

logger = logging.getLogger(__name__)

# Placeholder names the scanner writes when it couldn't read the cover/label
_NOT_MEANINGFUL = frozenset(
    {
        "unknown",
        "unknown artist",
        "unknown album",
        "onbekend",
        "onbekende",
        "untitled",
        "—",
        "-",
    }
)


def is_meaningful_name(value: Any) -> bool:
    """Check that a name is present and not a scanner placeholder."""
    if not isinstance(value, str):
        return False
    normalized = value.strip().lower()
    return bool(normalized) and normalized not in _NOT_MEANINGFUL


def _require(item: WorkItem, *keys: str) -> dict[str, str]:
    """Return the required metadata values or raise PoisonPayloadError."""
    values = {key: item.metadata.get(key) for key in keys}
    missing = [key for key, value in values.items() if not is_meaningful_name(value)]
    if missing:
        raise PoisonPayloadError(
            f"{INCOMPLETE_METADATA}: {item.item_type} {item.item_id} is missing "
            f"{', '.join(missing)}",
            error_code=INCOMPLETE_METADATA,
        )
    return {key: str(value).strip() for key, value in values.items()}


class _GenerationWorker(IBatchWorker):
    """Shared plumbing for workers that call one generation function."""

    PROCESS_TYPE: str = ""
    ITEM_TYPES: tuple[str, ...] = ()
    FUNCTION_NAME: str = ""

    def __init__(self, client: GenerationClient) -> None:
        self._client = client

    @property
    def process_type(self) -> str:
        return self.PROCESS_TYPE

    @property
    def item_types(self) -> tuple[str, ...]:
        return self.ITEM_TYPES

    async def _invoke(self, item: WorkItem, payload: dict[str, Any]) -> dict[str, Any]:
        logger.debug(
            "Invoking %s for %s %s",
            self.FUNCTION_NAME,
            item.item_type,
            item.item_id,
        )
        return await self._client.invoke(self.FUNCTION_NAME, payload)


class BlogPostWorker(_GenerationWorker):
    """Generates one "plaat & verhaal" blog post for a scanned CD, vinyl or AI scan."""

    PROCESS_TYPE = "blog_generation"
    ITEM_TYPES = ("blog_post",)
    FUNCTION_NAME = "plaat-verhaal-generator"

    # CD scans first, then vinyl, AI scans last
    MEDIA_PRIORITY = {"cd": 3, "vinyl": 2, "ai": 1}

    def default_priority(self, item: dict[str, Any]) -> int:
        media_type = str(item.get("metadata", {}).get("media_type", "")).lower()
        return self.MEDIA_PRIORITY.get(media_type, 1)

    async def perform(self, item: WorkItem) -> dict[str, Any]:
        """Generate the blog post for one album."""
        _require(item, "artist", "title")
        media_type = str(item.metadata.get("media_type") or "cd").lower()
        if media_type not in self.MEDIA_PRIORITY:
            raise PoisonPayloadError(
                f"Unsupported media_type '{media_type}' for blog post {item.item_id}",
                error_code="invalid_media_type",
            )

        return await self._invoke(
            item,
            {
                "albumId": item.item_id,
                "albumType": media_type,
                "autoPublish": bool(item.metadata.get("auto_publish", True)),
                "forceRegenerate": bool(item.metadata.get("force_regenerate", False)),
            },
        )


class ComposerStoryWorker(_GenerationWorker):
    """Generates one composer story."""

    PROCESS_TYPE = "composer_story_generation"
    ITEM_TYPES = ("composer_story",)
    FUNCTION_NAME = "generate-composer-story"

    async def perform(self, item: WorkItem) -> dict[str, Any]:
        """Generate and save the story for one composer."""
        values = _require(item, "composer_name")
        return await self._invoke(
            item,
            {"composerName": values["composer_name"], "saveToDatabase": True},
        )


class ArtistStoryWorker(_GenerationWorker):
    """Generates one artist story."""

    PROCESS_TYPE = "artist_stories"
    ITEM_TYPES = ("artist_story",)
    FUNCTION_NAME = "generate-artist-story"

    async def perform(self, item: WorkItem) -> dict[str, Any]:
        """Generate the story for one artist."""
        values = _require(item, "artist_name")
        return await self._invoke(item, {"artistName": values["artist_name"]})


def create_content_workers(client: GenerationClient) -> list[IBatchWorker]:
    """Create all generation workers sharing one client."""
    return [
        BlogPostWorker(client),
        ComposerStoryWorker(client),
        ArtistStoryWorker(client),
    ]
