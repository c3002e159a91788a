"""Worker error classification - poison payload vs transient failure.

Hey future me - this module decides whether a failed queue item gets ANOTHER try!

The problem: the generation functions fail for two very different reasons.
- The source record is incomplete (no artist, no title). Retrying is pointless
  and every retry is a paid AI call that gets rejected again.
- The AI/Discogs API hiccuped (rate limit, timeout, 502). Retrying later works.

The solution: workers raise typed errors (PoisonPayloadError / TransientWorkerError).
Anything else is classified by looking for the non-retryable markers the
functions put in their error messages:
- "INCOMPLETE_METADATA" (plaat-verhaal-generator guard)
- HTTP 422 / "Unprocessable Entity"

Everything that doesn't match a marker is TRANSIENT. Unknown errors get retried
with backoff until max_attempts.

USAGE:
    from musicscan.domain.entities.error_codes import WorkerErrorKind, classify_error

    if classify_error(exc) is WorkerErrorKind.POISON:
        item.fail(str(exc))
"""

import re
from enum import Enum

from musicscan.domain.exceptions import PoisonPayloadError, TransientWorkerError


class WorkerErrorKind(str, Enum):
    """The two classes of worker failure."""

    POISON = "poison"
    TRANSIENT = "transient"


INCOMPLETE_METADATA = "INCOMPLETE_METADATA"

# Lowercase substrings that mark an error as non-retryable
NON_RETRYABLE_MARKERS: frozenset[str] = frozenset(
    {
        "incomplete_metadata",
        "unprocessable",
    }
)

# "422" must stand alone - "HTTP 422", "status=422", "422:" but NOT "14220 bytes"
_HTTP_422_PATTERN = re.compile(r"(?<!\d)422(?!\d)")


def is_non_retryable_message(message: str | None) -> bool:
    """Check whether an error message carries a non-retryable marker.

    Args:
        message: Raw error message (may be None)

    Returns:
        True if the message marks a poison payload
    """
    if not message:
        return False

    message_lower = message.lower()
    if any(marker in message_lower for marker in NON_RETRYABLE_MARKERS):
        return True
    return bool(_HTTP_422_PATTERN.search(message))


def classify_error(error: BaseException) -> WorkerErrorKind:
    """Classify a worker exception as poison or transient.

    Typed worker errors win; untyped exceptions fall back to marker matching.
    """
    if isinstance(error, PoisonPayloadError):
        return WorkerErrorKind.POISON
    if isinstance(error, TransientWorkerError):
        return WorkerErrorKind.TRANSIENT

    error_code = getattr(error, "error_code", None)
    if isinstance(error_code, str) and is_non_retryable_message(error_code):
        return WorkerErrorKind.POISON

    if is_non_retryable_message(str(error)):
        return WorkerErrorKind.POISON
    return WorkerErrorKind.TRANSIENT


def describe_error(error: BaseException) -> str:
    """Build the error_message stored on a queue item."""
    message = str(error).strip()
    if not message:
        message = type(error).__name__
    error_code = getattr(error, "error_code", None)
    if error_code and error_code not in message:
        message = f"{error_code}: {message}"
    # error_message is TEXT, but keep rows small for the status dashboard
    return message[:2000]
