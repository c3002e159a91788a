"""Matrix photo detection endpoint used by the bulk photo upload."""

import asyncio
import logging
from typing import Annotated, Any

from fastapi import APIRouter, File, UploadFile

from musicscan.application.services.matrix_photo_detector import detect_from_bytes
from musicscan.domain.exceptions import ValidationException

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/matrix")

# Phone photos are a few MB, anything way beyond that is not a scan
MAX_UPLOAD_BYTES = 25 * 1024 * 1024


@router.post("/detect")
async def detect_matrix_photo(file: Annotated[UploadFile, File()]) -> dict[str, Any]:
    """Score an uploaded photo as CD matrix side or not.

    Returns:
        {"isMatrix", "confidence", "features": {...}, "detectionTimeMs"}

    Raises:
        ValidationException: Empty or oversized upload (400)
    """
    data = await file.read()
    if not data:
        raise ValidationException("Uploaded file is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationException(
            f"Uploaded file is too large ({len(data)} bytes, max {MAX_UPLOAD_BYTES})"
        )

    # Pixel loops are CPU-bound, keep them off the event loop
    result = await asyncio.to_thread(detect_from_bytes, data, file.filename)
    return result.to_dict()
