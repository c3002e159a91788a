"""HTTP client for the content-generation functions (blog posts, composer and artist stories)."""

import logging
from typing import Any, NoReturn, cast

import httpx

from musicscan.config.settings import GenerationSettings
from musicscan.domain.entities.error_codes import (
    INCOMPLETE_METADATA,
    is_non_retryable_message,
)
from musicscan.domain.exceptions import PoisonPayloadError, TransientWorkerError

logger = logging.getLogger(__name__)


# Hey future me, this is the ONLY place that turns HTTP failures into the two worker error
# classes! Workers never look at status codes themselves.
#   422 or body {"error": "INCOMPLETE_METADATA"} → PoisonPayloadError (source record incomplete)
#   429, 5xx, timeouts, connection errors          → TransientWorkerError (try again later)
#   any other 4xx                                  → PoisonPayloadError (same request fails again)
# 401/403 land in "other 4xx" - a wrong API key fails items fast instead of burning 3 attempts
# per item. Fix the key and use retry_failed.
class GenerationClient:
    """HTTP client for invoking generation functions."""

    FUNCTIONS_PATH = "/functions/v1"

    def __init__(
        self,
        settings: GenerationSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize generation client.

        Args:
            settings: Generation service configuration
            client: Optional pre-built client (tests)
        """
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.settings.api_key:
                headers["Authorization"] = f"Bearer {self.settings.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url.rstrip("/"),
                headers=headers,
                timeout=self.settings.timeout_seconds,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def invoke(self, function_name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Invoke a generation function and return its JSON body.

        Args:
            function_name: Function slug (e.g. "generate-composer-story")
            payload: JSON request body

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            PoisonPayloadError: Request can never succeed as-is
            TransientWorkerError: Network problem, rate limit, or server error
        """
        client = await self._get_client()
        url = f"{self.FUNCTIONS_PATH}/{function_name}"

        try:
            response = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientWorkerError(
                f"{function_name} timed out: {e}", error_code="timeout"
            ) from e
        except httpx.TransportError as e:
            raise TransientWorkerError(
                f"{function_name} unreachable: {e}", error_code="network"
            ) from e

        body = self._parse_body(response)
        if response.is_success:
            # Some functions answer 200 with {"success": false, "error": ...}
            if body.get("success") is not False:
                return body

        self._raise_for_error_body(function_name, response.status_code, body)

    @staticmethod
    def _parse_body(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            return {"error": response.text[:500]}
        if isinstance(data, dict):
            return cast(dict[str, Any], data)
        return {"data": data}

    def _raise_for_error_body(
        self, function_name: str, status_code: int, body: dict[str, Any]
    ) -> NoReturn:
        error = str(body.get("error") or "")
        detail = str(body.get("message") or error or f"HTTP {status_code}")
        message = f"{function_name} failed (HTTP {status_code}): {detail}"

        if error == INCOMPLETE_METADATA or status_code == 422:
            logger.info(
                "Generation rejected payload as unprocessable",
                extra={"function": function_name, "status_code": status_code},
            )
            raise PoisonPayloadError(message, error_code=error or "HTTP_422")

        if status_code == 429 or status_code >= 500:
            raise TransientWorkerError(message, error_code=f"HTTP_{status_code}")

        if 400 <= status_code < 500:
            raise PoisonPayloadError(message, error_code=f"HTTP_{status_code}")

        # 2xx with an error body: markers decide, default is transient
        if is_non_retryable_message(error) or is_non_retryable_message(detail):
            raise PoisonPayloadError(message, error_code=error or None)
        raise TransientWorkerError(message, error_code=error or None)
