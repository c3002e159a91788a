"""Batch queue endpoints - the cron trigger plus admin actions.

Hey future me - POST /batch/{process_type}/tick is THE endpoint cron hits every minute,
with no body at all. An empty or non-JSON body therefore means "tick". The admin
dashboard posts {"action": "status" | "retry_failed" | "start", ...} to the same URL.
"""

import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from musicscan.api.dependencies import get_batch_processor
from musicscan.api.schemas.batch import (
    BatchActionRequest,
    BatchStatusResponse,
    ProcessTypesResponse,
    RetryFailedResponse,
    StartResponse,
    TickResponse,
)
from musicscan.application.workers.batch_queue_processor import BatchQueueProcessor
from musicscan.domain.exceptions import ValidationException

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batch")

Processor = Annotated[BatchQueueProcessor, Depends(get_batch_processor)]


async def _parse_action(request: Request) -> BatchActionRequest:
    """Read the optional action body. Missing, empty or non-JSON → tick."""
    raw = await request.body()
    if not raw.strip():
        return BatchActionRequest()
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("Non-JSON trigger body on %s, treating as tick", request.url.path)
        return BatchActionRequest()
    if not isinstance(data, dict):
        return BatchActionRequest()

    try:
        return BatchActionRequest.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationException(f"Invalid request: {problems}") from e


@router.get("/process-types", response_model=ProcessTypesResponse)
async def list_process_types(processor: Processor) -> ProcessTypesResponse:
    """List the process types that have a registered worker."""
    return ProcessTypesResponse(process_types=processor.registry.process_types())


@router.post("/{process_type}/tick")
async def trigger(
    process_type: str, request: Request, processor: Processor
) -> dict[str, Any]:
    """Tick the queue, or run an admin action on it.

    Actions:
    - tick (default): process at most one item
    - status: latest batch + queue stats
    - retry_failed: put failed items back (resetAttempts, default true)
    - start: enqueue a new batch (items, dryRun)

    Raises:
        ConfigurationError: Unknown process type (404)
        InvalidStateException: start while a batch is running (409)
        ValidationException: Bad action body (400)
    """
    body = await _parse_action(request)

    if body.action == "status":
        report = await processor.status(process_type)
        return BatchStatusResponse.from_report(report).to_json(exclude_none=False)

    if body.action == "retry_failed":
        count = await processor.retry_failed(process_type, reset_attempts=body.reset_attempts)
        return RetryFailedResponse(
            message=f"Reset {count} failed item(s) to pending", reset_count=count
        ).to_json()

    if body.action == "start":
        items = [item.model_dump(exclude_none=True) for item in body.items]
        result = await processor.start(process_type, items, dry_run=body.dry_run)
        return StartResponse.from_result(result).to_json()

    result = await processor.tick(process_type)
    return TickResponse.from_result(result).to_json()


@router.get("/{process_type}/status")
async def get_status(process_type: str, processor: Processor) -> dict[str, Any]:
    """Latest batch of a process type plus queue stats (read-only)."""
    report = await processor.status(process_type)
    return BatchStatusResponse.from_report(report).to_json(exclude_none=False)
