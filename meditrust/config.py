"""
Analysis Configuration for MediTrust
====================================
Thresholds, weights, severity table and recommendation text for the
medicine authentication pipeline.

The numeric defaults (80 / 85 / 70) are uncalibrated starting points.
Override them per deployment through MEDITRUST_* environment variables or by
constructing AnalysisConfig directly.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Dict, Tuple


# ============================================================
# Feature Keys
# ============================================================

COLOR = "color"
SHAPE = "shape"
SIZE = "size"
TEXT = "text"
QR_CODE = "qrCode"
PACKAGING = "packaging"

# Slot order of the feature vector and of AnalysisResult.features
FEATURE_KEYS: Tuple[str, ...] = (COLOR, SHAPE, SIZE, TEXT, QR_CODE, PACKAGING)

# Tie-break order for discrepancies within one severity tier
FEATURE_PRECEDENCE: Tuple[str, ...] = (TEXT, QR_CODE, COLOR, SHAPE, SIZE, PACKAGING)


# ============================================================
# Recommendation Text
# ============================================================

AUTHENTIC_CARE_RECOMMENDATIONS: Tuple[str, ...] = (
    "This medicine appears to be authentic based on our analysis.",
    "Store the medicine in a cool, dry place away from direct sunlight.",
    "Check the expiration date before use.",
    "Follow the dosage instructions provided by your healthcare provider.",
)

CAUTION_RECOMMENDATIONS: Tuple[str, ...] = (
    "Some minor discrepancies were detected. Exercise caution.",
    "Verify the medicine with your pharmacist or healthcare provider before use.",
    "Check if the packaging seal was intact when you received it.",
    "Compare with a known authentic sample if available.",
    "Report suspicious medicines to local health authorities.",
)

CRITICAL_RECOMMENDATIONS: Tuple[str, ...] = (
    "CRITICAL: This medicine shows significant signs of being counterfeit. DO NOT USE.",
    "Immediately report this to local health authorities and pharmaceutical regulators.",
    "Do not dispose of the medicine - keep it as evidence for authorities.",
    "Contact the manufacturer directly using verified contact information.",
    "Visit an authorized pharmacy or healthcare facility for genuine medicine.",
    "File a complaint with your country's drug regulatory authority.",
)


def _default_thresholds() -> Dict[str, int]:
    # Lower bounds of the plausible score range per feature
    return {
        COLOR: 70,
        SHAPE: 75,
        SIZE: 80,
        TEXT: 65,
        QR_CODE: 60,
        PACKAGING: 70,
    }


def _default_weights() -> Dict[str, float]:
    return {key: 1.0 for key in FEATURE_KEYS}


def _default_severities() -> Dict[str, str]:
    return {
        TEXT: "high",
        QR_CODE: "high",
        COLOR: "medium",
        SHAPE: "medium",
        SIZE: "medium",
        PACKAGING: "medium",
    }


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class AnalysisConfig:
    """Configuration for one AnalysisService instance."""

    # Orchestrator
    timeout_seconds: float = 5.0

    # Extractor
    min_width: int = 64
    min_height: int = 64
    max_dimension: int = 1024
    parallel_extraction: bool = False

    # Matcher
    match_thresholds: Dict[str, int] = field(default_factory=_default_thresholds)
    weights: Dict[str, float] = field(default_factory=_default_weights)
    feature_floor: int = 0
    min_viable_match: float = 50.0
    color_distance_scale: float = 180.0
    shape_tolerance: float = 0.5
    text_tolerance: float = 60.0
    packaging_tolerance: float = 50.0
    qr_foreign_score: int = 20
    qr_unexpected_score: int = 50

    # Discrepancy synthesizer
    severities: Dict[str, str] = field(default_factory=_default_severities)
    shape_hard_limit: float = 0.35
    size_hard_limit: float = 0.30

    # Verdict aggregator
    authentic_threshold: int = 80
    authentic_band: int = 85
    caution_band: int = 70
    authentic_recommendations: Tuple[str, ...] = AUTHENTIC_CARE_RECOMMENDATIONS
    caution_recommendations: Tuple[str, ...] = CAUTION_RECOMMENDATIONS
    critical_recommendations: Tuple[str, ...] = CRITICAL_RECOMMENDATIONS

    def __post_init__(self):
        missing = [k for k in FEATURE_KEYS if k not in self.match_thresholds]
        if missing:
            raise ValueError(f"match_thresholds missing features: {missing}")
        for key, value in self.match_thresholds.items():
            if not 0 <= value <= 100:
                raise ValueError(f"match threshold for {key} must be in [0, 100]")

        if any(self.weights.get(k, 0.0) < 0 for k in FEATURE_KEYS):
            raise ValueError("feature weights must be non-negative")
        if sum(self.weights.get(k, 0.0) for k in FEATURE_KEYS) <= 0:
            raise ValueError("at least one feature weight must be positive")

        if not 0 <= self.feature_floor <= 100:
            raise ValueError("feature_floor must be in [0, 100]")
        # A degraded feature must never count as a match
        above = [k for k in FEATURE_KEYS if self.feature_floor >= self.match_thresholds[k]]
        if above:
            raise ValueError(f"feature_floor must be below the match threshold of: {above}")
        if not 0 <= self.min_viable_match <= 100:
            raise ValueError("min_viable_match must be in [0, 100]")

        for key in FEATURE_KEYS:
            if self.severities.get(key) not in ("high", "medium", "low"):
                raise ValueError(f"severity for {key} must be high, medium or low")

        if not self.caution_band <= self.authentic_band:
            raise ValueError("caution_band must not exceed authentic_band")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.min_width < 1 or self.min_height < 1:
            raise ValueError("minimum resolution must be at least 1x1")

    def threshold(self, feature: str) -> int:
        return self.match_thresholds[feature]

    def weight(self, feature: str) -> float:
        return self.weights.get(feature, 0.0)

    def with_overrides(self, **changes) -> "AnalysisConfig":
        """Returns a copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "AnalysisConfig":
        """
        Builds a configuration from MEDITRUST_* environment variables.

        Unset variables keep their defaults.
        """
        base = cls()
        return replace(
            base,
            timeout_seconds=_env_float("MEDITRUST_TIMEOUT_SECONDS", base.timeout_seconds),
            min_width=_env_int("MEDITRUST_MIN_WIDTH", base.min_width),
            min_height=_env_int("MEDITRUST_MIN_HEIGHT", base.min_height),
            max_dimension=_env_int("MEDITRUST_MAX_DIMENSION", base.max_dimension),
            parallel_extraction=_env_bool("MEDITRUST_PARALLEL_EXTRACTION", base.parallel_extraction),
            min_viable_match=_env_float("MEDITRUST_MIN_VIABLE_MATCH", base.min_viable_match),
            authentic_threshold=_env_int("MEDITRUST_AUTHENTIC_THRESHOLD", base.authentic_threshold),
        )
