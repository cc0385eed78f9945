"""
Discrepancy Synthesis for MediTrust
===================================
Turns non-matching feature scores into an ordered list of discrepancies.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from meditrust.config import (
    AnalysisConfig, COLOR, FEATURE_PRECEDENCE, PACKAGING, QR_CODE, SHAPE, SIZE, TEXT
)
from meditrust.services.extractor import Region
from meditrust.services.matcher import FeatureScore

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Discrepancy severity tiers."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_ORDER = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}

DISCREPANCY_TYPES = {
    TEXT: "Text Quality",
    QR_CODE: "QR Code Issue",
    COLOR: "Color Mismatch",
    SHAPE: "Shape Irregularity",
    SIZE: "Size Variance",
    PACKAGING: "Packaging Quality",
}

DISCREPANCY_DESCRIPTIONS = {
    TEXT: "Embossed text appears blurry, missing, or incorrectly formatted",
    QR_CODE: "QR code is missing, unreadable, or doesn't link to verified database",
    COLOR: "The tablet color deviates from the expected shade for authentic products",
    SHAPE: "Tablet outline deviates from the reference shape",
    SIZE: "Tablet dimensions fall outside the reference size range",
    PACKAGING: "Print quality or material consistency below expected standards",
}


@dataclass(frozen=True)
class Discrepancy:
    """A mismatch between the photo and the authentic reference."""
    feature: str
    type: str
    severity: Severity
    description: str
    location: Optional[Region] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "severity": self.severity.value,
            "description": self.description,
        }
        if self.location is not None:
            data["location"] = self.location.to_dict()
        return data


class DiscrepancySynthesizer:
    """Emits exactly one discrepancy per non-matching feature."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    def severity_for(self, feature: str, score: FeatureScore) -> Severity:
        severity = Severity(self.config.severities[feature])
        if feature == SHAPE and score.deviation > self.config.shape_hard_limit:
            return Severity.HIGH
        if feature == SIZE and score.deviation > self.config.size_hard_limit:
            return Severity.HIGH
        return severity

    def synthesize(self, scored_features: Mapping[str, FeatureScore]) -> List[Discrepancy]:
        """
        Builds the ordered discrepancy list.

        Order: high, medium, low; within a tier text, qrCode, color, shape,
        size, packaging.
        """
        discrepancies = []
        for feature in FEATURE_PRECEDENCE:
            score = scored_features.get(feature)
            if score is None or score.match:
                continue
            discrepancies.append(Discrepancy(
                feature=feature,
                type=DISCREPANCY_TYPES[feature],
                severity=self.severity_for(feature, score),
                description=DISCREPANCY_DESCRIPTIONS[feature],
                location=score.region,
            ))

        # Stable sort keeps feature precedence inside each tier
        discrepancies.sort(key=lambda d: SEVERITY_ORDER[d.severity])

        if discrepancies:
            logger.debug(
                "Discrepancies: " + ", ".join(f"{d.feature}={d.severity.value}" for d in discrepancies)
            )
        return discrepancies
