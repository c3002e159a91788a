"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so handlers can read it without
    # parsing str(exception). Don't raise this directly - use a specific subclass.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationException(DomainException):
    """Raised when input or entity validation fails.

    HTTP Status: 400
    """

    pass


class InvalidStateException(DomainException):
    """Raised when an entity is in an invalid state for the requested operation.

    Example: starting a new batch while another batch of the same process
    type is still running, or completing a queue item that was never claimed.

    HTTP Status: 409
    """

    pass


class ConfigurationError(DomainException):
    """Application misconfiguration (e.g. no worker registered for a process type).

    HTTP Status: 404 for unknown process types at the API boundary
    """

    pass


# =============================================================================
# Batch queue worker errors
# Hey future me - the tick handler only knows TWO classes of worker failure!
# PoisonPayloadError  → item can never succeed, fail it NOW (don't burn AI quota)
# TransientWorkerError → network/rate limit/timeout, retry with backoff
# Anything else a worker raises is classified by message markers, see
# domain/entities/error_codes.py.
# =============================================================================


class WorkerError(DomainException):
    """Base class for errors raised by batch workers."""

    def __init__(self, message: str, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class TransientWorkerError(WorkerError):
    """Worker failed for a reason that may go away (network, 429, timeout)."""

    pass


class PoisonPayloadError(WorkerError):
    """Worker reports the payload can never be processed as-is.

    Example: a CD scan without artist/title - retrying won't add the missing fields.
    """

    pass


class OrphanedQueueError(DomainException):
    """Queue items reference a batch record that no longer exists.

    This is a data-integrity anomaly (batch deleted while items remained),
    never a transient failure.
    """

    def __init__(self, batch_id: str, item_ids: list[str]) -> None:
        super().__init__(
            f"{len(item_ids)} queue item(s) reference missing batch record {batch_id}"
        )
        self.batch_id = batch_id
        self.item_ids = item_ids


__all__ = [
    "ConfigurationError",
    "DomainException",
    "EntityNotFoundException",
    "InvalidStateException",
    "OrphanedQueueError",
    "PoisonPayloadError",
    "TransientWorkerError",
    "ValidationException",
    "WorkerError",
]
