"""Unit tests for RequestLoggingMiddleware."""

import logging
from unittest.mock import patch

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from musicscan.infrastructure.observability.logging import get_correlation_id
from musicscan.infrastructure.observability.middleware import RequestLoggingMiddleware

LOGGER_PATH = "musicscan.infrastructure.observability.middleware.logger"


class TestRequestLoggingMiddleware:
    """Test suite for RequestLoggingMiddleware."""

    @pytest.fixture
    def app(self) -> FastAPI:
        app = FastAPI()
        app.add_middleware(RequestLoggingMiddleware)

        @app.post("/api/batch/blog_generation/tick")
        async def tick_endpoint():
            return {"correlation": get_correlation_id()}

        @app.get("/api/health")
        async def health_endpoint():
            return {"status": "healthy"}

        @app.get("/api/health/broken")
        async def broken_health_endpoint():
            raise HTTPException(status_code=503, detail="down")

        @app.get("/error")
        async def error_endpoint():
            raise ValueError("Test error")

        return app

    @pytest.fixture
    def client(self, app: FastAPI) -> TestClient:
        return TestClient(app)

    def test_request_logs_completion_at_info(self, client: TestClient):
        with patch(LOGGER_PATH) as mock_logger:
            response = client.post("/api/batch/blog_generation/tick")

        assert response.status_code == 200
        assert mock_logger.log.call_count == 1
        level, fmt, mark, method, path, status_code, _duration = mock_logger.log.call_args[0]
        assert level == logging.INFO
        assert "ms" in fmt
        assert (mark, method, path, status_code) == (
            "✓",
            "POST",
            "/api/batch/blog_generation/tick",
            200,
        )
        assert mock_logger.log.call_args.kwargs["extra"]["status_code"] == 200

    def test_correlation_id_header_is_used_and_echoed(self, client: TestClient):
        response = client.post(
            "/api/batch/blog_generation/tick",
            headers={"X-Correlation-ID": "cron-2026-01-05T09:00"},
        )

        assert response.json() == {"correlation": "cron-2026-01-05T09:00"}
        assert response.headers["X-Correlation-ID"] == "cron-2026-01-05T09:00"

    def test_correlation_id_generated_when_missing(self, client: TestClient):
        first = client.post("/api/batch/blog_generation/tick")
        second = client.post("/api/batch/blog_generation/tick")

        assert first.headers["X-Correlation-ID"] == first.json()["correlation"]
        assert len(first.headers["X-Correlation-ID"]) == 36
        assert first.headers["X-Correlation-ID"] != second.headers["X-Correlation-ID"]

    def test_health_checks_log_at_debug(self, client: TestClient):
        with patch(LOGGER_PATH) as mock_logger:
            client.get("/api/health")

        assert mock_logger.log.call_args[0][0] == logging.DEBUG

    def test_failing_health_checks_log_at_info(self, client: TestClient):
        with patch(LOGGER_PATH) as mock_logger:
            response = client.get("/api/health/broken")

        assert response.status_code == 503
        level, _fmt, mark = mock_logger.log.call_args[0][:3]
        assert level == logging.INFO
        assert mark == "✗"

    def test_custom_quiet_paths(self):
        app = FastAPI()
        app.add_middleware(RequestLoggingMiddleware, quiet_paths=("/metrics",))

        @app.get("/api/health")
        async def health_endpoint():
            return {}

        with patch(LOGGER_PATH) as mock_logger:
            TestClient(app).get("/api/health")

        assert mock_logger.log.call_args[0][0] == logging.INFO

    def test_error_request_logs_exception(self, client: TestClient):
        with patch(LOGGER_PATH) as mock_logger:
            with pytest.raises(ValueError):
                client.get("/error")

        assert mock_logger.exception.call_count == 1
        fmt, method, path = mock_logger.exception.call_args[0]
        assert "failed" in fmt
        assert (method, path) == ("GET", "/error")
        assert mock_logger.exception.call_args.kwargs["extra"]["error_type"] == "ValueError"
