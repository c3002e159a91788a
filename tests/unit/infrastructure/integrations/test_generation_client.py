"""Tests for the content-generation HTTP client."""

import json
from collections.abc import AsyncGenerator

import httpx
import pytest
from pytest_httpx import HTTPXMock

from musicscan.config import GenerationSettings
from musicscan.domain.exceptions import PoisonPayloadError, TransientWorkerError
from musicscan.infrastructure.integrations.generation_client import GenerationClient

BASE_URL = "http://generation.test"
STORY_URL = f"{BASE_URL}/functions/v1/generate-artist-story"


@pytest.fixture
def generation_settings() -> GenerationSettings:
    return GenerationSettings(base_url=f"{BASE_URL}/", api_key="secret-key", timeout_seconds=5)


@pytest.fixture
async def client(
    generation_settings: GenerationSettings,
) -> AsyncGenerator[GenerationClient, None]:
    generation_client = GenerationClient(generation_settings)
    yield generation_client
    await generation_client.close()


class TestInvokeSuccess:
    async def test_returns_json_body(self, client: GenerationClient, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            url=STORY_URL,
            method="POST",
            json={"success": True, "storyId": "s-1"},
        )

        result = await client.invoke("generate-artist-story", {"artistName": "Doe Maar"})

        assert result == {"success": True, "storyId": "s-1"}
        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["Authorization"] == "Bearer secret-key"
        assert json.loads(request.content) == {"artistName": "Doe Maar"}

    async def test_empty_body_is_empty_dict(self, client: GenerationClient, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=STORY_URL, status_code=204)

        assert await client.invoke("generate-artist-story", {}) == {}

    async def test_no_auth_header_without_api_key(self, httpx_mock: HTTPXMock):
        client = GenerationClient(GenerationSettings(base_url=BASE_URL, api_key=""))
        httpx_mock.add_response(url=STORY_URL, json={"success": True})

        await client.invoke("generate-artist-story", {})
        await client.close()

        request = httpx_mock.get_request()
        assert request is not None
        assert "Authorization" not in request.headers


class TestInvokeErrors:
    async def test_422_is_poison(self, client: GenerationClient, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=STORY_URL, status_code=422, json={"message": "bad album"})

        with pytest.raises(PoisonPayloadError) as exc_info:
            await client.invoke("generate-artist-story", {})

        assert exc_info.value.error_code == "HTTP_422"
        assert "bad album" in exc_info.value.message

    @pytest.mark.parametrize("status_code", [200, 400])
    async def test_incomplete_metadata_body_is_poison(
        self, client: GenerationClient, httpx_mock: HTTPXMock, status_code: int
    ):
        httpx_mock.add_response(
            url=STORY_URL,
            status_code=status_code,
            json={"success": False, "error": "INCOMPLETE_METADATA"},
        )

        with pytest.raises(PoisonPayloadError) as exc_info:
            await client.invoke("generate-artist-story", {})

        assert exc_info.value.error_code == "INCOMPLETE_METADATA"

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_rate_limit_and_server_errors_are_transient(
        self, client: GenerationClient, httpx_mock: HTTPXMock, status_code: int
    ):
        httpx_mock.add_response(url=STORY_URL, status_code=status_code, json={})

        with pytest.raises(TransientWorkerError) as exc_info:
            await client.invoke("generate-artist-story", {})

        assert exc_info.value.error_code == f"HTTP_{status_code}"

    async def test_non_json_error_body_is_kept(
        self, client: GenerationClient, httpx_mock: HTTPXMock
    ):
        httpx_mock.add_response(url=STORY_URL, status_code=502, text="<html>Bad Gateway</html>")

        with pytest.raises(TransientWorkerError, match="Bad Gateway"):
            await client.invoke("generate-artist-story", {})

    async def test_wrong_api_key_fails_fast(self, client: GenerationClient, httpx_mock: HTTPXMock):
        httpx_mock.add_response(url=STORY_URL, status_code=401, json={"error": "Unauthorized"})

        with pytest.raises(PoisonPayloadError) as exc_info:
            await client.invoke("generate-artist-story", {})

        assert exc_info.value.error_code == "HTTP_401"

    async def test_unsuccessful_200_without_marker_is_transient(
        self, client: GenerationClient, httpx_mock: HTTPXMock
    ):
        httpx_mock.add_response(
            url=STORY_URL, json={"success": False, "error": "model overloaded"}
        )

        with pytest.raises(TransientWorkerError, match="model overloaded"):
            await client.invoke("generate-artist-story", {})

    async def test_timeout_is_transient(self, client: GenerationClient, httpx_mock: HTTPXMock):
        httpx_mock.add_exception(httpx.ReadTimeout("took too long"))

        with pytest.raises(TransientWorkerError) as exc_info:
            await client.invoke("generate-artist-story", {})

        assert exc_info.value.error_code == "timeout"

    async def test_connection_error_is_transient(
        self, client: GenerationClient, httpx_mock: HTTPXMock
    ):
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))

        with pytest.raises(TransientWorkerError) as exc_info:
            await client.invoke("generate-artist-story", {})

        assert exc_info.value.error_code == "network"


async def test_close_leaves_injected_client_open(generation_settings: GenerationSettings):
    async with httpx.AsyncClient(base_url=BASE_URL) as http_client:
        client = GenerationClient(generation_settings, client=http_client)

        await client.close()

        assert http_client.is_closed is False
