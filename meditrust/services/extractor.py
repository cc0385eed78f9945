"""
Feature Extraction Service for MediTrust
========================================
Turns a medicine photo into a fixed vector of explainable measurements.

Sub-extractors (independent, each writes only its own slot):
- color:     mean RGB of the segmented object + nearest palette colour
- shape:     min-area-rect aspect ratio, circularity, fill ratio
- size:      object extent relative to the frame
- text:      edge density of printed/embossed markings
- qrCode:    registry QR payload (OpenCV detector)
- packaging: print quality from sharpness + Error Level Analysis

Deterministic: identical bytes always give an identical FeatureVector.
A sub-extractor failure degrades only its own feature.
"""

import io
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from meditrust.config import (
    AnalysisConfig, COLOR, FEATURE_KEYS, PACKAGING, QR_CODE, SHAPE, SIZE, TEXT
)
from meditrust.qr_service import decode_qr
from meditrust.services.errors import AnalysisCancelled, ExtractionError
from meditrust.services.reference import COLOR_PALETTE, SIZE_CLASSES, SIZE_EXTENTS
from meditrust.utils import clamp, hash_bytes

logger = logging.getLogger(__name__)


# ============================================================
# Measurement Constants
# ============================================================

# Minimum RGB distance from the background colour for a foreground pixel
FOREGROUND_DISTANCE = 40.0
# Objects smaller than this fraction of the frame are treated as noise
MIN_OBJECT_FRACTION = 0.005

# Edge density at which the text-region quality saturates at 100
TEXT_FULL_EDGE_DENSITY = 0.015
CANNY_LOW = 50
CANNY_HIGH = 150

# Laplacian variance at which sharpness saturates
SHARPNESS_FULL_VARIANCE = 50.0
# ELA recompression quality and the error std treated as fully degraded print
JPEG_QUALITY_ELA = 95
ELA_STD_CEILING = 30.0


# ============================================================
# Data Models
# ============================================================

@dataclass(frozen=True)
class Region:
    """Bounding box in percentage-of-image coordinates, each in [0, 100]."""
    x: float
    y: float
    width: float
    height: float

    @classmethod
    def from_box(
        cls,
        x0: float,
        y0: float,
        x1: float,
        y1: float,
        image_width: int,
        image_height: int
    ) -> "Region":
        x = clamp(100.0 * x0 / image_width)
        y = clamp(100.0 * y0 / image_height)
        right = clamp(100.0 * x1 / image_width)
        bottom = clamp(100.0 * y1 / image_height)
        return cls(
            x=round(x, 2),
            y=round(y, 2),
            width=round(max(0.0, right - x), 2),
            height=round(max(0.0, bottom - y), 2),
        )

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class ColorMeasurement:
    mean_rgb: Tuple[float, float, float]
    dominant_color: str
    region: Optional[Region] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ShapeMeasurement:
    aspect_ratio: float
    circularity: float
    fill_ratio: float
    shape_class: str
    region: Optional[Region] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SizeMeasurement:
    relative_extent: float
    size_class: str
    region: Optional[Region] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TextMeasurement:
    quality: float  # 0-100
    region: Optional[Region] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class QRMeasurement:
    payload: Optional[str]
    region: Optional[Region] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PackagingMeasurement:
    print_quality: float  # 0-100
    sharpness: float = 0.0
    ela_error: float = 0.0
    region: Optional[Region] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class FeatureVector:
    """Per-image measurements, one slot per analysed feature."""
    color: ColorMeasurement
    shape: ShapeMeasurement
    size: SizeMeasurement
    text: TextMeasurement
    qr_code: QRMeasurement
    packaging: PackagingMeasurement
    width: int = 0
    height: int = 0
    image_sha256: str = ""

    def measurement(self, feature: str) -> Any:
        return {
            COLOR: self.color,
            SHAPE: self.shape,
            SIZE: self.size,
            TEXT: self.text,
            QR_CODE: self.qr_code,
            PACKAGING: self.packaging,
        }[feature]

    def degraded_features(self) -> List[str]:
        return [key for key in FEATURE_KEYS if self.measurement(key).error]


def degraded_measurement(feature: str, reason: str) -> Any:
    """Neutral measurement recorded when a sub-extractor fails."""
    if feature == COLOR:
        return ColorMeasurement(mean_rgb=(0.0, 0.0, 0.0), dominant_color="unknown", error=reason)
    if feature == SHAPE:
        return ShapeMeasurement(aspect_ratio=0.0, circularity=0.0, fill_ratio=0.0,
                                shape_class="unknown", error=reason)
    if feature == SIZE:
        return SizeMeasurement(relative_extent=0.0, size_class="unknown", error=reason)
    if feature == TEXT:
        return TextMeasurement(quality=0.0, error=reason)
    if feature == QR_CODE:
        return QRMeasurement(payload=None, error=reason)
    if feature == PACKAGING:
        return PackagingMeasurement(print_quality=0.0, error=reason)
    raise KeyError(feature)


class FeatureUnavailable(Exception):
    """A sub-extractor could not measure its feature on this image."""
    pass


@dataclass
class _Segmentation:
    object_mask: np.ndarray  # uint8 0/255, filled outline of the main object
    contour: np.ndarray
    bbox: Tuple[int, int, int, int]  # x0, y0, x1, y1


@dataclass
class _ImageContext:
    rgb: np.ndarray
    gray: np.ndarray
    width: int
    height: int
    segmentation: Optional[_Segmentation]


# ============================================================
# Helpers
# ============================================================

def nearest_palette_color(rgb: Tuple[float, float, float]) -> str:
    """Name of the palette colour closest to rgb (ties go to palette order)."""
    best_name = ""
    best_distance = math.inf
    for name, reference in COLOR_PALETTE.items():
        distance = math.dist(rgb, reference)
        if distance < best_distance:
            best_name, best_distance = name, distance
    return best_name


def classify_shape(aspect_ratio: float, fill_ratio: float) -> str:
    if aspect_ratio < 1.25:
        return "round"
    if aspect_ratio >= 2.2:
        return "capsule"
    return "oblong" if fill_ratio > 0.9 else "oval"


def classify_size(relative_extent: float) -> str:
    """Nearest size class on the ordered size scale."""
    return min(SIZE_CLASSES, key=lambda c: (abs(SIZE_EXTENTS[c] - relative_extent), SIZE_CLASSES.index(c)))


def _segment(rgb: np.ndarray) -> Optional[_Segmentation]:
    """
    Separates the main object from the background.

    The background colour is the median of the frame border; the object is
    the largest connected foreground contour.
    """
    border = np.concatenate([rgb[0, :], rgb[-1, :], rgb[:, 0], rgb[:, -1]]).astype(np.float32)
    background = np.median(border, axis=0)

    distance = np.linalg.norm(rgb.astype(np.float32) - background, axis=2)
    mask = (distance > FOREGROUND_DISTANCE).astype(np.uint8) * 255
    mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, np.ones((3, 3), np.uint8))

    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
    if not contours:
        return None

    # Sort by area then by position so equal-area blobs resolve deterministically
    contour = max(
        contours,
        key=lambda c: (cv2.contourArea(c), -int(c[:, 0, 1].min()), -int(c[:, 0, 0].min()))
    )
    area = cv2.contourArea(contour)
    if area < MIN_OBJECT_FRACTION * rgb.shape[0] * rgb.shape[1]:
        return None

    object_mask = np.zeros(mask.shape, dtype=np.uint8)
    cv2.drawContours(object_mask, [contour], -1, 255, thickness=cv2.FILLED)

    x, y, w, h = cv2.boundingRect(contour)
    return _Segmentation(object_mask=object_mask, contour=contour, bbox=(x, y, x + w, y + h))


def _region(ctx: _ImageContext, box: Tuple[float, float, float, float]) -> Region:
    return Region.from_box(*box, image_width=ctx.width, image_height=ctx.height)


def _require_object(ctx: _ImageContext) -> _Segmentation:
    if ctx.segmentation is None:
        raise FeatureUnavailable("No distinct medicine object found in image")
    return ctx.segmentation


# ============================================================
# Sub-extractors
# ============================================================

def extract_color(ctx: _ImageContext) -> ColorMeasurement:
    if ctx.segmentation is not None:
        seg = ctx.segmentation
        # Erode to drop anti-aliased outline pixels that blend with background
        inner = cv2.erode(seg.object_mask, np.ones((5, 5), np.uint8))
        if not inner.any():
            inner = seg.object_mask
        pixels = ctx.rgb[inner > 0]
        region = _region(ctx, seg.bbox)
    else:
        pixels = ctx.rgb.reshape(-1, 3)
        region = None

    mean = pixels.astype(np.float64).mean(axis=0)
    mean_rgb = (round(float(mean[0]), 2), round(float(mean[1]), 2), round(float(mean[2]), 2))
    return ColorMeasurement(
        mean_rgb=mean_rgb,
        dominant_color=nearest_palette_color(mean_rgb),
        region=region,
    )


def extract_shape(ctx: _ImageContext) -> ShapeMeasurement:
    seg = _require_object(ctx)

    (_, _), (rect_w, rect_h), _ = cv2.minAreaRect(seg.contour)
    long_side, short_side = max(rect_w, rect_h), min(rect_w, rect_h)
    if short_side <= 0:
        raise FeatureUnavailable("Degenerate object outline")

    area = float(cv2.contourArea(seg.contour))
    perimeter = float(cv2.arcLength(seg.contour, True))
    circularity = 4.0 * math.pi * area / (perimeter ** 2) if perimeter > 0 else 0.0
    aspect_ratio = long_side / short_side
    fill_ratio = area / (long_side * short_side)

    return ShapeMeasurement(
        aspect_ratio=round(aspect_ratio, 4),
        circularity=round(min(1.0, circularity), 4),
        fill_ratio=round(min(1.0, fill_ratio), 4),
        shape_class=classify_shape(aspect_ratio, fill_ratio),
        region=_region(ctx, seg.bbox),
    )


def extract_size(ctx: _ImageContext) -> SizeMeasurement:
    seg = _require_object(ctx)

    (_, _), (rect_w, rect_h), _ = cv2.minAreaRect(seg.contour)
    extent = max(rect_w, rect_h) / max(ctx.width, ctx.height)
    extent = round(min(1.0, extent), 4)

    return SizeMeasurement(
        relative_extent=extent,
        size_class=classify_size(extent),
        region=_region(ctx, seg.bbox),
    )


def extract_text(ctx: _ImageContext) -> TextMeasurement:
    seg = _require_object(ctx)

    # Markings only count inside the object, away from its outline
    inner = cv2.erode(seg.object_mask, np.ones((9, 9), np.uint8))
    inner_area = int(np.count_nonzero(inner))
    if inner_area == 0:
        raise FeatureUnavailable("Object too small for text analysis")

    blurred = cv2.GaussianBlur(ctx.gray, (3, 3), 0)
    edges = cv2.Canny(blurred, CANNY_LOW, CANNY_HIGH)
    edges[inner == 0] = 0

    edge_count = int(np.count_nonzero(edges))
    density = edge_count / inner_area
    quality = round(100.0 * min(1.0, density / TEXT_FULL_EDGE_DENSITY), 2)

    region = None
    if edge_count:
        ys, xs = np.nonzero(edges)
        region = _region(ctx, (int(xs.min()), int(ys.min()), int(xs.max()) + 1, int(ys.max()) + 1))

    return TextMeasurement(quality=quality, region=region)


def extract_qr_code(ctx: _ImageContext) -> QRMeasurement:
    payload, corners = decode_qr(ctx.gray)
    if not payload:
        return QRMeasurement(payload=None)

    region = None
    if corners is not None and len(corners):
        region = _region(
            ctx,
            (float(corners[:, 0].min()), float(corners[:, 1].min()),
             float(corners[:, 0].max()), float(corners[:, 1].max()))
        )
    return QRMeasurement(payload=payload, region=region)


def extract_packaging(ctx: _ImageContext) -> PackagingMeasurement:
    laplacian_var = float(cv2.Laplacian(ctx.gray, cv2.CV_64F).var())
    sharpness = min(1.0, laplacian_var / SHARPNESS_FULL_VARIANCE)

    # Error Level Analysis: re-save at a known JPEG quality and measure
    # how unevenly the image responds
    img = Image.fromarray(ctx.rgb)
    buffer = io.BytesIO()
    try:
        img.save(buffer, format="JPEG", quality=JPEG_QUALITY_ELA)
        buffer.seek(0)
        with Image.open(buffer) as recompressed:
            recompressed_arr = np.asarray(recompressed.convert("RGB"), dtype=np.float32)
    finally:
        buffer.close()
        img.close()

    diff = np.abs(ctx.rgb.astype(np.float32) - recompressed_arr)
    ela_error = float(np.std(diff))
    ela_consistency = 1.0 - min(1.0, ela_error / ELA_STD_CEILING)

    print_quality = 100.0 * (0.6 * sharpness + 0.4 * ela_consistency)

    return PackagingMeasurement(
        print_quality=round(print_quality, 2),
        sharpness=round(sharpness, 4),
        ela_error=round(ela_error, 4),
    )


SUB_EXTRACTORS: Dict[str, Callable[[_ImageContext], Any]] = {
    COLOR: extract_color,
    SHAPE: extract_shape,
    SIZE: extract_size,
    TEXT: extract_text,
    QR_CODE: extract_qr_code,
    PACKAGING: extract_packaging,
}


# ============================================================
# Feature Extractor
# ============================================================

class FeatureExtractor:
    """
    Decodes an image and runs the six sub-extractors.

    Pure function of the image bytes aside from logging.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    def decode(self, image_bytes: bytes, content_type: Optional[str] = None) -> Image.Image:
        """
        Decodes raw bytes into an RGB image, downscaled to max_dimension.

        Raises:
            ExtractionError: non-image content type, undecodable bytes, or
                resolution below the configured minimum
        """
        if content_type and not content_type.lower().startswith("image/"):
            raise ExtractionError(f"Unsupported content type: {content_type}")
        if not image_bytes:
            raise ExtractionError("Empty image payload")

        try:
            with Image.open(io.BytesIO(image_bytes)) as probe:
                probe.verify()
            img = Image.open(io.BytesIO(image_bytes))
            img.load()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError,
                Image.DecompressionBombError) as e:
            raise ExtractionError(f"Image could not be decoded: {e}")

        # Camera photos carry their rotation in EXIF
        oriented = ImageOps.exif_transpose(img)
        rgb = oriented.convert("RGB")
        if oriented is not img:
            oriented.close()
        img.close()

        if rgb.width < self.config.min_width or rgb.height < self.config.min_height:
            size = rgb.size
            rgb.close()
            raise ExtractionError(
                f"Image resolution {size[0]}x{size[1]} is below the minimum "
                f"{self.config.min_width}x{self.config.min_height}"
            )

        # Resize for memory efficiency
        if max(rgb.size) > self.config.max_dimension:
            ratio = self.config.max_dimension / max(rgb.size)
            new_size = (max(1, int(rgb.size[0] * ratio)), max(1, int(rgb.size[1] * ratio)))
            resized = rgb.resize(new_size, Image.Resampling.LANCZOS)
            rgb.close()
            rgb = resized

        return rgb

    def extract(
        self,
        image_bytes: bytes,
        content_type: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> FeatureVector:
        """
        Extracts the feature vector for one image.

        Args:
            image_bytes: Raw encoded image
            content_type: Optional MIME type hint
            cancel_event: Set by the caller to abort between sub-extractors

        Returns:
            FeatureVector

        Raises:
            ExtractionError: image unusable as a whole
            AnalysisCancelled: cancel_event was set
        """
        start_time = time.time()
        self._check_cancelled(cancel_event)

        img = self.decode(image_bytes, content_type)
        try:
            rgb = np.asarray(img, dtype=np.uint8).copy()
        finally:
            img.close()

        self._check_cancelled(cancel_event)

        gray = cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)
        ctx = _ImageContext(
            rgb=rgb,
            gray=gray,
            width=rgb.shape[1],
            height=rgb.shape[0],
            segmentation=_segment(rgb),
        )

        if self.config.parallel_extraction:
            measurements = self._run_parallel(ctx, cancel_event)
        else:
            measurements = {}
            for key in FEATURE_KEYS:
                self._check_cancelled(cancel_event)
                measurements[key] = self._run_sub_extractor(key, ctx)

        self._check_cancelled(cancel_event)

        vector = FeatureVector(
            color=measurements[COLOR],
            shape=measurements[SHAPE],
            size=measurements[SIZE],
            text=measurements[TEXT],
            qr_code=measurements[QR_CODE],
            packaging=measurements[PACKAGING],
            width=ctx.width,
            height=ctx.height,
            image_sha256=hash_bytes(image_bytes),
        )

        logger.info(
            f"Extracted features from {ctx.width}x{ctx.height} image in "
            f"{(time.time() - start_time) * 1000:.1f}ms "
            f"(degraded: {vector.degraded_features() or 'none'})"
        )
        return vector

    def _run_parallel(
        self,
        ctx: _ImageContext,
        cancel_event: Optional[threading.Event]
    ) -> Dict[str, Any]:
        def run(key: str) -> Any:
            self._check_cancelled(cancel_event)
            return self._run_sub_extractor(key, ctx)

        with ThreadPoolExecutor(max_workers=len(FEATURE_KEYS),
                                thread_name_prefix="meditrust-extract") as pool:
            results = list(pool.map(run, FEATURE_KEYS))
        return dict(zip(FEATURE_KEYS, results))

    def _run_sub_extractor(self, key: str, ctx: _ImageContext) -> Any:
        try:
            return SUB_EXTRACTORS[key](ctx)
        except FeatureUnavailable as e:
            logger.warning(f"{key} feature unavailable: {e}")
            return degraded_measurement(key, str(e))
        except (cv2.error, ValueError, ArithmeticError) as e:
            logger.warning(f"{key} sub-extractor failed: {e}")
            return degraded_measurement(key, f"{key} measurement failed: {e}")

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelled("Feature extraction cancelled")
