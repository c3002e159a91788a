"""Dependency injection for API endpoints."""

from typing import cast

from fastapi import HTTPException, Request

from musicscan.application.workers.batch_queue_processor import BatchQueueProcessor


# Hey future me - the processor lives on app.state, set up in lifecycle.lifespan(). If it's
# missing, startup failed or hasn't finished yet → 503 instead of an AttributeError 500.
def get_batch_processor(request: Request) -> BatchQueueProcessor:
    """Get the batch queue processor from app state.

    Raises:
        HTTPException: 503 if the processor isn't initialized
    """
    if not hasattr(request.app.state, "batch_processor"):
        raise HTTPException(status_code=503, detail="Batch processor not initialized")
    return cast(BatchQueueProcessor, request.app.state.batch_processor)
