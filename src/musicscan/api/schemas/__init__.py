"""Pydantic request/response models for the API."""

from musicscan.api.schemas.batch import (
    BatchActionRequest,
    BatchRecordSchema,
    BatchStatusResponse,
    ProcessTypesResponse,
    RetryFailedResponse,
    StartItem,
    StartResponse,
    TickResponse,
)

__all__ = [
    "BatchActionRequest",
    "BatchRecordSchema",
    "BatchStatusResponse",
    "ProcessTypesResponse",
    "RetryFailedResponse",
    "StartItem",
    "StartResponse",
    "TickResponse",
]
