"""
Reference Matching Service for MediTrust
========================================
Compares an extracted FeatureVector with every known-authentic reference
and picks the closest one.

Per-feature similarity (0-100):
- color:     RGB distance to the reference's canonical colour
- shape:     relative aspect-ratio deviation from the shape class
- size:      distance on the ordered size-class scale
- text:      text-quality shortfall (OCR-confidence delta)
- qrCode:    whether the QR payload resolves to this reference
- packaging: print-quality shortfall for the packaging class

Overall similarity is the weighted mean of the six scores. Ties go to the
lowest reference id.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from meditrust.config import (
    AnalysisConfig, COLOR, FEATURE_KEYS, PACKAGING, QR_CODE, SHAPE, SIZE, TEXT
)
from meditrust.qr_service import encode_payload, registry_payload, resolve_payload
from meditrust.services.extractor import (
    ColorMeasurement, FeatureVector, PackagingMeasurement, QRMeasurement,
    Region, ShapeMeasurement, SizeMeasurement, TextMeasurement
)
from meditrust.services.reference import (
    COLOR_PALETTE, PACKAGING_QUALITY_LEVELS, SHAPE_ASPECT_RATIOS, SIZE_CLASSES,
    SIZE_EXTENTS, TEXT_PRESENT_QUALITY, ReferenceDatabase, ReferenceMedicine
)
from meditrust.utils import clamp, round_half_up, weighted_mean

logger = logging.getLogger(__name__)

# Score by distance on the size-class scale
SIZE_CLASS_SCORES = {0: 100.0, 1: 55.0, 2: 20.0}


# ============================================================
# Data Models
# ============================================================

@dataclass(frozen=True)
class FeatureScore:
    """Similarity of one feature against one reference."""
    match: bool
    score: int  # 0 to 100
    details: str
    deviation: float = 0.0
    region: Optional[Region] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "match": self.match,
            "score": self.score,
            "details": self.details,
        }


def make_feature_score(
    feature: str,
    score: float,
    details: str,
    config: AnalysisConfig,
    deviation: float = 0.0,
    region: Optional[Region] = None
) -> FeatureScore:
    """Builds a FeatureScore whose match flag follows the feature threshold."""
    value = round_half_up(clamp(score))
    return FeatureScore(
        match=value >= config.threshold(feature),
        score=value,
        details=details,
        deviation=round(deviation, 4),
        region=region,
    )


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one FeatureVector against the database."""
    scored_features: Dict[str, FeatureScore]
    best_reference: Optional[ReferenceMedicine]
    candidate: Optional[ReferenceMedicine]
    overall_similarity: float
    ranking: List[Tuple[str, float]] = field(default_factory=list)


# ============================================================
# Per-feature Scoring
# ============================================================

def _score_color(m: ColorMeasurement, ref: ReferenceMedicine, config: AnalysisConfig) -> FeatureScore:
    expected = ref.features.color
    distance = math.dist(m.mean_rgb, COLOR_PALETTE[expected])
    score = 100.0 * (1.0 - distance / config.color_distance_scale)
    if score >= config.threshold(COLOR):
        details = (f"Color profile matches authentic sample within acceptable variance "
                   f"(measured {m.dominant_color}, expected {expected})")
    else:
        details = (f"Color deviation detected: measured {m.dominant_color}, expected {expected}. "
                   f"May indicate different dye batch or counterfeit.")
    return make_feature_score(COLOR, score, details, config,
                              deviation=distance / config.color_distance_scale, region=m.region)


def _score_shape(m: ShapeMeasurement, ref: ReferenceMedicine, config: AnalysisConfig) -> FeatureScore:
    expected = ref.features.shape
    canonical = SHAPE_ASPECT_RATIOS[expected]
    deviation = abs(m.aspect_ratio - canonical) / canonical
    score = 100.0 * (1.0 - min(1.0, deviation / config.shape_tolerance))
    if score >= config.threshold(SHAPE):
        details = (f"Tablet shape and dimensions match reference specifications "
                   f"({m.shape_class}, aspect ratio {m.aspect_ratio:.2f})")
    else:
        details = (f"Shape irregularities detected: measured {m.shape_class} "
                   f"(aspect ratio {m.aspect_ratio:.2f}), expected {expected} "
                   f"(aspect ratio {canonical:.2f}).")
    return make_feature_score(SHAPE, score, details, config, deviation=deviation, region=m.region)


def _score_size(m: SizeMeasurement, ref: ReferenceMedicine, config: AnalysisConfig) -> FeatureScore:
    expected = ref.features.size
    class_distance = abs(SIZE_CLASSES.index(m.size_class) - SIZE_CLASSES.index(expected))
    score = SIZE_CLASS_SCORES.get(class_distance, 0.0)
    canonical = SIZE_EXTENTS[expected]
    deviation = abs(m.relative_extent - canonical) / canonical
    if score >= config.threshold(SIZE):
        details = (f"Size measurements are within tolerance range of authentic medicine "
                   f"({m.size_class})")
    else:
        details = (f"Size variance exceeds acceptable limits by {deviation * 100:.0f}%: "
                   f"measured {m.size_class}, expected {expected}.")
    return make_feature_score(SIZE, score, details, config, deviation=deviation, region=m.region)


def _score_text(m: TextMeasurement, ref: ReferenceMedicine, config: AnalysisConfig) -> FeatureScore:
    if ref.features.text_present:
        delta = max(0.0, TEXT_PRESENT_QUALITY - m.quality)
    else:
        delta = m.quality
    score = 100.0 * (1.0 - min(1.0, delta / config.text_tolerance))
    if score >= config.threshold(TEXT):
        if ref.features.text_present:
            details = f"Embossed text is clear and properly formed (quality {m.quality:.0f}/100)"
        else:
            details = "No markings found, consistent with the unmarked reference"
    elif ref.features.text_present:
        details = (f"Text quality is degraded or missing (quality {m.quality:.0f}/100). "
                   f"Font weight and spacing differ from authentic samples.")
    else:
        details = f"Unexpected markings found on an unmarked product (quality {m.quality:.0f}/100)."
    return make_feature_score(TEXT, score, details, config, deviation=delta / 100.0, region=m.region)


def _score_qr_code(
    m: QRMeasurement,
    ref: ReferenceMedicine,
    resolved: Optional[ReferenceMedicine],
    config: AnalysisConfig
) -> FeatureScore:
    expected = ref.features.qr_code_present
    if m.payload is None:
        if expected:
            score = float(config.feature_floor)
            details = "QR code missing, damaged, or unreadable."
        else:
            score = 100.0
            details = "No QR code expected for this product"
    elif resolved is not None and resolved.id == ref.id:
        score = 100.0
        details = "QR code is scannable and links to verified pharmaceutical database"
    elif not expected:
        score = float(config.qr_unexpected_score)
        details = "QR code found on a product that is not registered with one."
    elif resolved is not None:
        score = float(config.qr_foreign_score)
        details = f"QR code resolves to a different registered product ({resolved.name})."
    else:
        score = float(config.qr_foreign_score)
        details = "QR code does not resolve to the official registry."
    return make_feature_score(QR_CODE, score, details, config, region=m.region)


def _score_packaging(m: PackagingMeasurement, ref: ReferenceMedicine, config: AnalysisConfig) -> FeatureScore:
    expected = ref.features.packaging_quality
    shortfall = max(0.0, PACKAGING_QUALITY_LEVELS[expected] - m.print_quality)
    score = 100.0 * (1.0 - min(1.0, shortfall / config.packaging_tolerance))
    if score >= config.threshold(PACKAGING):
        details = (f"Packaging material and print quality meet standards "
                   f"(print quality {m.print_quality:.0f}/100)")
    else:
        details = (f"Packaging shows signs of poor print quality "
                   f"(print quality {m.print_quality:.0f}/100, expected {expected}).")
    return make_feature_score(PACKAGING, score, details, config, deviation=shortfall / 100.0, region=m.region)


# ============================================================
# Reference Matcher
# ============================================================

class ReferenceMatcher:
    """
    Finds the reference medicine closest to an extracted FeatureVector.

    The database is injected at construction and only ever read.
    """

    def __init__(self, database: ReferenceDatabase, config: Optional[AnalysisConfig] = None):
        self.database = database
        self.config = config or AnalysisConfig()

    def score_against(
        self,
        vector: FeatureVector,
        reference: ReferenceMedicine,
        resolved: Optional[ReferenceMedicine] = None
    ) -> Dict[str, FeatureScore]:
        """Per-feature scores of vector against one reference."""
        scores = {}
        for key in FEATURE_KEYS:
            measurement = vector.measurement(key)
            if measurement.error:
                scores[key] = make_feature_score(
                    key,
                    self.config.feature_floor,
                    f"{measurement.error}; scored at the configured floor",
                    self.config,
                )
            elif key == COLOR:
                scores[key] = _score_color(measurement, reference, self.config)
            elif key == SHAPE:
                scores[key] = _score_shape(measurement, reference, self.config)
            elif key == SIZE:
                scores[key] = _score_size(measurement, reference, self.config)
            elif key == TEXT:
                scores[key] = _score_text(measurement, reference, self.config)
            elif key == QR_CODE:
                scores[key] = _score_qr_code(measurement, reference, resolved, self.config)
            else:
                scores[key] = _score_packaging(measurement, reference, self.config)
        return scores

    def overall(self, scores: Dict[str, FeatureScore]) -> float:
        """Weighted mean of the feature scores."""
        return weighted_mean(
            {key: float(scores[key].score) for key in FEATURE_KEYS},
            self.config.weights,
        )

    def match(self, vector: FeatureVector) -> MatchResult:
        """
        Matches vector against every reference.

        Returns:
            MatchResult with the closest candidate's scores; best_reference
            is None when no candidate reaches min_viable_match
        """
        resolved = None
        if not vector.qr_code.error:
            resolved = resolve_payload(vector.qr_code.payload, self.database)

        best: Optional[Tuple[float, str, ReferenceMedicine, Dict[str, FeatureScore]]] = None
        ranking = []
        for reference in self.database:
            scores = self.score_against(vector, reference, resolved)
            similarity = self.overall(scores)
            ranking.append((reference.id, round(similarity, 2)))
            # Database iterates in id order, so a strict > keeps the lowest id on ties
            if best is None or similarity > best[0]:
                best = (similarity, reference.id, reference, scores)

        if best is None:
            scores = {
                key: make_feature_score(
                    key, self.config.feature_floor,
                    "No reference medicines available for comparison", self.config
                )
                for key in FEATURE_KEYS
            }
            return MatchResult(
                scored_features=scores,
                best_reference=None,
                candidate=None,
                overall_similarity=self.overall(scores),
            )

        similarity, _, candidate, scores = best
        ranking.sort(key=lambda item: (-item[1], item[0]))
        matched = candidate if similarity >= self.config.min_viable_match else None

        if matched is None:
            logger.info(
                f"No viable reference match (closest {candidate.id} at {similarity:.1f}, "
                f"floor {self.config.min_viable_match})"
            )
        else:
            logger.info(f"Matched reference {candidate.id} with similarity {similarity:.1f}")

        return MatchResult(
            scored_features=scores,
            best_reference=matched,
            candidate=candidate,
            overall_similarity=similarity,
            ranking=ranking,
        )


def canonical_vector(reference: ReferenceMedicine) -> FeatureVector:
    """
    The FeatureVector an ideal photo of reference would produce.

    Matching it against a database that contains reference yields an
    overall similarity of 100 for that reference.
    """
    profile = reference.features
    aspect = SHAPE_ASPECT_RATIOS[profile.shape]
    return FeatureVector(
        color=ColorMeasurement(
            mean_rgb=tuple(float(c) for c in COLOR_PALETTE[profile.color]),
            dominant_color=profile.color,
        ),
        shape=ShapeMeasurement(
            aspect_ratio=aspect,
            circularity=round(1.0 / aspect, 4),
            fill_ratio=math.pi / 4 if profile.shape in ("round", "oval") else 0.9,
            shape_class=profile.shape,
        ),
        size=SizeMeasurement(
            relative_extent=SIZE_EXTENTS[profile.size],
            size_class=profile.size,
        ),
        text=TextMeasurement(quality=TEXT_PRESENT_QUALITY if profile.text_present else 0.0),
        qr_code=QRMeasurement(
            payload=encode_payload(registry_payload(reference)) if profile.qr_code_present else None
        ),
        packaging=PackagingMeasurement(
            print_quality=PACKAGING_QUALITY_LEVELS[profile.packaging_quality]
        ),
    )
