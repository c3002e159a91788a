"""Tests for worker error classification."""

import pytest

from musicscan.domain.entities.error_codes import (
    WorkerErrorKind,
    classify_error,
    describe_error,
    is_non_retryable_message,
)
from musicscan.domain.exceptions import PoisonPayloadError, TransientWorkerError


class TestNonRetryableMarkers:
    @pytest.mark.parametrize(
        "message",
        [
            "INCOMPLETE_METADATA: album has no artist",
            "incomplete_metadata",
            "HTTP 422",
            "status=422",
            "422: Unprocessable Entity",
            "Unprocessable entity",
        ],
    )
    def test_marker_detected(self, message: str) -> None:
        assert is_non_retryable_message(message)

    @pytest.mark.parametrize(
        "message",
        [None, "", "HTTP 500", "rate limited (429)", "read 14220 bytes", "timeout"],
    )
    def test_no_marker(self, message: str | None) -> None:
        assert not is_non_retryable_message(message)


class TestClassifyError:
    def test_typed_errors_win_over_message(self) -> None:
        # A transient error whose text happens to mention 422 is still transient
        assert (
            classify_error(TransientWorkerError("retry after HTTP 422 proxy glitch"))
            is WorkerErrorKind.TRANSIENT
        )
        assert classify_error(PoisonPayloadError("bad input")) is WorkerErrorKind.POISON

    def test_untyped_error_uses_markers(self) -> None:
        assert classify_error(ValueError("INCOMPLETE_METADATA")) is WorkerErrorKind.POISON
        assert classify_error(ValueError("socket closed")) is WorkerErrorKind.TRANSIENT

    def test_error_code_attribute_is_checked(self) -> None:
        class UpstreamError(Exception):
            error_code = "INCOMPLETE_METADATA"

        assert classify_error(UpstreamError("generator refused")) is WorkerErrorKind.POISON


class TestDescribeError:
    def test_prefixes_error_code(self) -> None:
        error = TransientWorkerError("too many requests", error_code="HTTP_429")
        assert describe_error(error) == "HTTP_429: too many requests"

    def test_does_not_repeat_code(self) -> None:
        error = PoisonPayloadError(
            "INCOMPLETE_METADATA: no title", error_code="INCOMPLETE_METADATA"
        )
        assert describe_error(error) == "INCOMPLETE_METADATA: no title"

    def test_empty_message_uses_type_name(self) -> None:
        assert describe_error(TimeoutError()) == "TimeoutError"

    def test_truncates_long_messages(self) -> None:
        assert len(describe_error(RuntimeError("x" * 5000))) == 2000
