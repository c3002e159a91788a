"""Application services."""

from musicscan.application.services.matrix_photo_detector import (
    MatrixDetectionResult,
    MatrixFeatures,
    detect,
    detect_from_bytes,
    detect_from_filename,
)

__all__ = [
    "MatrixDetectionResult",
    "MatrixFeatures",
    "detect",
    "detect_from_bytes",
    "detect_from_filename",
]
