"""Matrix photo detector - is this upload a photo of a CD's data side?

Hey future me - this is a HEURISTIC, not computer vision! The scanner flow asks users
for front cover, back cover and a "matrix" photo (the shiny side with the hub hole and
the runout code). When they bulk-upload, we sort the photos by scoring four cheap
geometric features around the image center:

| feature                 | weight | what it looks for                                   |
|-------------------------|--------|-----------------------------------------------------|
| has_hub_hole            | 0.35   | dark disk in the center (or center darker than ring)|
| has_rainbow_reflection  | 0.25   | colorful hues around the disc (or shiny hotspots)   |
| has_circular_structure  | 0.25   | brightness profile of a centered disc               |
| has_concentric_rings    | 0.15   | brightness oscillating along a radius               |

A filename like "matrix.jpg" or "cd_back.png" adds 0.15. confidence >= 0.5 → matrix.

Everything works on a copy downscaled to max 400px - full-res phone photos would take
seconds per image in pure Python.
"""

import logging
import math
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from io import BytesIO

from PIL import Image as PILImage
from PIL import UnidentifiedImageError

from musicscan.domain.exceptions import ValidationException

logger = logging.getLogger(__name__)

MAX_ANALYSIS_DIM = 400
MATRIX_THRESHOLD = 0.5
FILENAME_HINT_BONUS = 0.15

WEIGHT_HUB_HOLE = 0.35
WEIGHT_RAINBOW = 0.25
WEIGHT_CIRCULAR = 0.25
WEIGHT_RINGS = 0.15

MATRIX_FILENAME_KEYWORDS = (
    "matrix",
    "disc",
    "cd",
    "label",
    "plaat",
    "ring",
    "surface",
    "back",
    "bottom",
    "data",
    "runout",
)

RGB = tuple[int, int, int]


@dataclass(frozen=True)
class MatrixFeatures:
    """Boolean features found in the image."""

    has_hub_hole: bool = False
    has_rainbow_reflection: bool = False
    has_circular_structure: bool = False
    has_concentric_rings: bool = False


@dataclass(frozen=True)
class MatrixDetectionResult:
    """Detection verdict for one image."""

    is_matrix: bool
    confidence: float
    features: MatrixFeatures
    detection_time_ms: float

    def to_dict(self) -> dict[str, object]:
        """Serialize with the camelCase keys the scanner frontend expects."""
        features = asdict(self.features)
        return {
            "isMatrix": self.is_matrix,
            "confidence": round(self.confidence, 4),
            "features": {
                "hasHubHole": features["has_hub_hole"],
                "hasRainbowReflection": features["has_rainbow_reflection"],
                "hasCircularStructure": features["has_circular_structure"],
                "hasConcentricRings": features["has_concentric_rings"],
            },
            "detectionTimeMs": round(self.detection_time_ms, 2),
        }


class _Sampler:
    """Pixel lookups on the downscaled image, centered coordinates."""

    def __init__(self, image: PILImage.Image) -> None:
        self.width, self.height = image.size
        self._pixels = image.load()
        self.cx = self.width / 2
        self.cy = self.height / 2
        self.min_dim = min(self.width, self.height)

    def rgb(self, x: int, y: int) -> RGB | None:
        if x < 0 or x >= self.width or y < 0 or y >= self.height:
            return None
        return self._pixels[x, y]  # type: ignore[index,return-value]

    def brightness(self, x: int, y: int) -> float | None:
        pixel = self.rgb(x, y)
        if pixel is None:
            return None
        return (pixel[0] + pixel[1] + pixel[2]) / 3

    def on_circle(self, radius: float, angle_deg: float) -> tuple[int, int]:
        radians = math.radians(angle_deg)
        return (
            round(self.cx + math.cos(radians) * radius),
            round(self.cy + math.sin(radians) * radius),
        )

    def ring_brightness(self, radius: float, step_deg: float) -> list[float]:
        values = []
        angle = 0.0
        while angle < 360:
            value = self.brightness(*self.on_circle(radius, angle))
            if value is not None:
                values.append(value)
            angle += step_deg
        return values


def _rgb_to_hue_saturation(r: int, g: int, b: int) -> tuple[float, float]:
    """HSL hue (degrees) and saturation (0-1)."""
    rf, gf, bf = r / 255, g / 255, b / 255
    high, low = max(rf, gf, bf), min(rf, gf, bf)
    if high == low:
        return 0.0, 0.0

    delta = high - low
    lightness = (high + low) / 2
    saturation = delta / (2 - high - low) if lightness > 0.5 else delta / (high + low)
    if high == rf:
        hue = ((gf - bf) / delta + (6 if gf < bf else 0)) * 60
    elif high == gf:
        hue = ((bf - rf) / delta + 2) * 60
    else:
        hue = ((rf - gf) / delta + 4) * 60
    return hue, saturation


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# =============================================================================
# FEATURES
# =============================================================================


def _has_dark_hub(sampler: _Sampler) -> bool:
    """More than half of the pixels within 5% radius are darker than 60."""
    radius = sampler.min_dim * 0.05
    dark = total = 0
    for y in range(math.floor(sampler.cy - radius), math.ceil(sampler.cy + radius) + 1):
        for x in range(math.floor(sampler.cx - radius), math.ceil(sampler.cx + radius) + 1):
            if math.hypot(x - sampler.cx, y - sampler.cy) > radius:
                continue
            value = sampler.brightness(x, y)
            if value is None:
                continue
            total += 1
            if value < 60:
                dark += 1
    return total > 0 and dark / total > 0.5


def _has_central_dark_area(sampler: _Sampler) -> bool:
    """Center (10% radius) clearly darker than the 25-35% ring."""
    inner_radius = sampler.min_dim * 0.10
    center: list[float] = []
    for angle in range(0, 360, 30):
        r = 0.0
        while r < inner_radius:
            value = sampler.brightness(*sampler.on_circle(r, angle))
            if value is not None:
                center.append(value)
            r += 5
    outer = sampler.ring_brightness(sampler.min_dim * 0.30, 20)
    if not center or not outer:
        return False
    return _mean(center) < _mean(outer) * 0.85


def _has_rainbow(sampler: _Sampler) -> bool:
    """Saturated, widely spread hues on the ring at 27.5% radius."""
    radius = sampler.min_dim * 0.275
    hues: list[float] = []
    saturated = 0
    for angle in range(0, 360, 10):
        pixel = sampler.rgb(*sampler.on_circle(radius, angle))
        if pixel is None:
            continue
        hue, saturation = _rgb_to_hue_saturation(*pixel[:3])
        hues.append(hue)
        if saturation > 0.3:
            saturated += 1

    if len(hues) <= 5:
        return False
    mean_hue = _mean(hues)
    spread = math.sqrt(
        _mean(
            [min(abs(h - mean_hue), 360 - abs(h - mean_hue)) ** 2 for h in hues]
        )
    )
    return saturated / len(hues) > 0.2 and spread > 40


def _has_reflective_surface(sampler: _Sampler) -> bool:
    """Bright ring at 30% radius with hotspots (high brightness spread)."""
    values = sampler.ring_brightness(sampler.min_dim * 0.30, 15)
    if len(values) < 8:
        return False
    mean = _mean(values)
    std_dev = math.sqrt(_mean([(v - mean) ** 2 for v in values]))
    return mean > 100 and std_dev > 25


def _has_circular_structure(sampler: _Sampler) -> bool:
    """Dark center vs. disc, or an evenly lit disc area."""
    profile = []
    for ratio in (0.1, 0.2, 0.3, 0.4, 0.45):
        values = sampler.ring_brightness(sampler.min_dim * ratio, 360 / 16)
        profile.append(_mean(values))

    inner = profile[0]
    mid = (profile[1] + profile[2]) / 2
    outer = profile[3]
    return inner < mid * 0.7 or abs(mid - outer) < 50


def _has_concentric_rings(sampler: _Sampler) -> bool:
    """At least 3 significant local extrema along a horizontal radius."""
    max_radius = sampler.min_dim * 0.4
    steps = 50
    radial: list[float] = []
    for i in range(steps):
        value = sampler.brightness(
            round(sampler.cx + (i / steps) * max_radius), round(sampler.cy)
        )
        if value is not None:
            radial.append(value)

    transitions = 0
    for i in range(2, len(radial) - 2):
        prev, curr, nxt = radial[i - 1], radial[i], radial[i + 1]
        if (curr < prev and curr < nxt) or (curr > prev and curr > nxt):
            if abs(curr - (prev + nxt) / 2) > 10:
                transitions += 1
    return transitions >= 3


# =============================================================================
# PUBLIC API
# =============================================================================


def detect_from_filename(filename: str | None) -> bool:
    """Check whether a filename hints at a disc/matrix photo."""
    if not filename:
        return False
    lower = filename.lower()
    return any(keyword in lower for keyword in MATRIX_FILENAME_KEYWORDS)


def _score_image(
    image: PILImage.Image, filename: str | None, started: float
) -> MatrixDetectionResult:
    if image.mode != "RGB":
        image = image.convert("RGB")
    if max(image.size) > MAX_ANALYSIS_DIM:
        image = image.copy()
        image.thumbnail((MAX_ANALYSIS_DIM, MAX_ANALYSIS_DIM), PILImage.Resampling.BILINEAR)

    sampler = _Sampler(image)
    features = MatrixFeatures(
        has_hub_hole=_has_dark_hub(sampler) or _has_central_dark_area(sampler),
        has_rainbow_reflection=_has_rainbow(sampler) or _has_reflective_surface(sampler),
        has_circular_structure=_has_circular_structure(sampler),
        has_concentric_rings=_has_concentric_rings(sampler),
    )

    score = (
        WEIGHT_HUB_HOLE * features.has_hub_hole
        + WEIGHT_RAINBOW * features.has_rainbow_reflection
        + WEIGHT_CIRCULAR * features.has_circular_structure
        + WEIGHT_RINGS * features.has_concentric_rings
    )
    if detect_from_filename(filename):
        score += FILENAME_HINT_BONUS
    score = min(score, 1.0)

    result = MatrixDetectionResult(
        is_matrix=score >= MATRIX_THRESHOLD,
        confidence=score,
        features=features,
        detection_time_ms=(time.perf_counter() - started) * 1000,
    )
    logger.debug(
        "Matrix photo detection: %.0f%% confidence in %.0fms",
        score * 100,
        result.detection_time_ms,
        extra={"image_filename": filename, **asdict(features)},
    )
    return result


def detect(
    pixels: Sequence[RGB],
    width: int,
    height: int,
    filename: str | None = None,
) -> MatrixDetectionResult:
    """Score raw RGB pixels.

    Args:
        pixels: Row-major (r, g, b) triples, width * height of them
        width: Image width in pixels
        height: Image height in pixels
        filename: Optional original filename (keyword hint bonus)

    Returns:
        Detection result

    Raises:
        ValidationException: If the dimensions don't match the pixel count
    """
    started = time.perf_counter()
    if width <= 0 or height <= 0:
        raise ValidationException(f"Invalid image size {width}x{height}")
    if len(pixels) != width * height:
        raise ValidationException(
            f"Expected {width * height} pixels for {width}x{height}, got {len(pixels)}"
        )

    image = PILImage.new("RGB", (width, height))
    image.putdata([tuple(pixel[:3]) for pixel in pixels])
    return _score_image(image, filename, started)


def detect_from_bytes(data: bytes, filename: str | None = None) -> MatrixDetectionResult:
    """Decode an uploaded image and score it.

    Undecodable input is not an error: it simply isn't a matrix photo
    (confidence 0, no features). That includes decompression bombs, a tiny file
    whose header claims a huge canvas.
    """
    started = time.perf_counter()
    try:
        with PILImage.open(BytesIO(data)) as img:
            img.load()
            image = img.convert("RGB")
    except (
        UnidentifiedImageError,
        PILImage.DecompressionBombError,
        OSError,
        ValueError,
    ) as e:
        logger.info("Could not decode image %s for matrix detection: %s", filename, e)
        return MatrixDetectionResult(
            is_matrix=False,
            confidence=0.0,
            features=MatrixFeatures(),
            detection_time_ms=(time.perf_counter() - started) * 1000,
        )
    return _score_image(image, filename, started)
