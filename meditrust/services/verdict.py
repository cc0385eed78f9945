"""
Verdict Aggregation for MediTrust
=================================
Combines per-feature scores into one confidence value, an authentic /
counterfeit classification and tiered safety recommendations.

Confidence = weighted mean of the feature scores (the same mean the
matcher ranks references by), rounded and clamped to [0, 100].

Authentic = confidence > authentic_threshold AND no high-severity
discrepancy AND a reference was matched.

Recommendation tiers (band edges are configuration):
    confidence >  85           -> authentic care
    70 <= confidence <= 85     -> caution, verify with a pharmacist
    confidence <  70           -> critical, do not use, report
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from meditrust.config import AnalysisConfig, FEATURE_KEYS
from meditrust.services.discrepancy import Discrepancy, DiscrepancySynthesizer, Severity
from meditrust.services.matcher import FeatureScore
from meditrust.services.reference import ReferenceMedicine
from meditrust.utils import clamp, round_half_up, score_breakdown, weighted_mean

logger = logging.getLogger(__name__)


class RecommendationTier(str, Enum):
    """Recommendation tiers, by confidence band."""
    AUTHENTIC_CARE = "authentic_care"
    CAUTION = "caution"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Verdict:
    """Final classification for one analysis."""
    authentic: bool
    confidence: int
    tier: RecommendationTier
    recommendations: Tuple[str, ...]
    components: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authentic": self.authentic,
            "confidence": self.confidence,
            "tier": self.tier.value,
            "recommendations": list(self.recommendations),
            "components": self.components,
        }


class VerdictAggregator:
    """Pure, deterministic verdict computation."""

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    def confidence(self, scored_features: Mapping[str, FeatureScore]) -> int:
        mean = weighted_mean(
            {key: float(scored_features[key].score) for key in FEATURE_KEYS},
            self.config.weights,
        )
        return int(clamp(round_half_up(mean)))

    def tier_for(self, confidence: int, authentic: bool = True) -> RecommendationTier:
        """
        Recommendation tier for a confidence value.

        Authentic-care guidance is reserved for authentic verdicts; a
        high-confidence result that failed a critical check gets caution.
        """
        if confidence > self.config.authentic_band and authentic:
            return RecommendationTier.AUTHENTIC_CARE
        if confidence >= self.config.caution_band:
            return RecommendationTier.CAUTION
        return RecommendationTier.CRITICAL

    def recommendations_for(self, tier: RecommendationTier) -> Tuple[str, ...]:
        if tier is RecommendationTier.AUTHENTIC_CARE:
            return tuple(self.config.authentic_recommendations)
        if tier is RecommendationTier.CAUTION:
            return tuple(self.config.caution_recommendations)
        return tuple(self.config.critical_recommendations)

    def aggregate(
        self,
        scored_features: Mapping[str, FeatureScore],
        matched_reference: Optional[ReferenceMedicine],
        discrepancies: Optional[List[Discrepancy]] = None
    ) -> Verdict:
        """
        Computes the verdict.

        Args:
            scored_features: The six FeatureScores of the closest reference
            matched_reference: Viable reference match, or None
            discrepancies: Synthesized discrepancies (derived from
                scored_features when omitted)

        Returns:
            Verdict
        """
        if discrepancies is None:
            discrepancies = DiscrepancySynthesizer(self.config).synthesize(scored_features)

        confidence = self.confidence(scored_features)
        has_high = any(d.severity is Severity.HIGH for d in discrepancies)
        authentic = (
            confidence > self.config.authentic_threshold
            and not has_high
            and matched_reference is not None
        )
        tier = self.tier_for(confidence, authentic)

        components = score_breakdown(
            {key: float(scored_features[key].score) for key in FEATURE_KEYS},
            self.config.weights,
        )

        logger.info(
            f"Verdict: {'authentic' if authentic else 'not authentic'} "
            f"(confidence {confidence}, tier {tier.value}, "
            f"high-severity discrepancies: {has_high})"
        )

        return Verdict(
            authentic=authentic,
            confidence=confidence,
            tier=tier,
            recommendations=self.recommendations_for(tier),
            components=components,
        )
