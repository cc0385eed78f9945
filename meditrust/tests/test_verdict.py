"""
Test Suite for Verdict Aggregation
==================================
Tests for confidence, authenticity and recommendation banding.
"""

import pytest

from meditrust.config import (
    AUTHENTIC_CARE_RECOMMENDATIONS, AnalysisConfig, CAUTION_RECOMMENDATIONS,
    CRITICAL_RECOMMENDATIONS, FEATURE_KEYS
)
from meditrust.services.discrepancy import DiscrepancySynthesizer, Severity
from meditrust.services.matcher import make_feature_score
from meditrust.services.verdict import RecommendationTier, VerdictAggregator


def _uniform(score, config=None):
    config = config or AnalysisConfig()
    return {key: make_feature_score(key, score, "", config) for key in FEATURE_KEYS}


@pytest.fixture
def aggregator():
    return VerdictAggregator()


class TestConfidence:

    def test_mean_of_scores(self, aggregator):
        scores = _uniform(100)
        scores["qrCode"] = make_feature_score("qrCode", 0, "", AnalysisConfig())
        # 500 / 6 = 83.33
        assert aggregator.confidence(scores) == 83

    def test_rounds_half_up(self, aggregator):
        config = AnalysisConfig()
        scores = {key: make_feature_score(key, 85, "", config) for key in FEATURE_KEYS}
        scores["color"] = make_feature_score("color", 88, "", config)
        # (5 * 85 + 88) / 6 = 85.5
        assert aggregator.confidence(scores) == 86

    def test_uses_configured_weights(self):
        weights = {key: 0.0 for key in FEATURE_KEYS}
        weights["text"] = 1.0
        config = AnalysisConfig(weights=weights)
        scores = _uniform(100, config)
        scores["text"] = make_feature_score("text", 40, "", config)

        assert VerdictAggregator(config).confidence(scores) == 40

    @pytest.mark.parametrize("score", [0, 37, 100])
    def test_bounded(self, aggregator, score):
        assert 0 <= aggregator.confidence(_uniform(score)) <= 100


class TestRecommendationBands:

    @pytest.mark.parametrize("confidence,tier", [
        (100, RecommendationTier.AUTHENTIC_CARE),
        (90, RecommendationTier.AUTHENTIC_CARE),
        (86, RecommendationTier.AUTHENTIC_CARE),
        (85, RecommendationTier.CAUTION),
        (75, RecommendationTier.CAUTION),
        (70, RecommendationTier.CAUTION),
        (69, RecommendationTier.CRITICAL),
        (40, RecommendationTier.CRITICAL),
        (0, RecommendationTier.CRITICAL),
    ])
    def test_band_edges(self, aggregator, confidence, tier):
        assert aggregator.tier_for(confidence) is tier

    def test_non_authentic_never_gets_care_text(self, aggregator):
        assert aggregator.tier_for(95, authentic=False) is RecommendationTier.CAUTION

    def test_recommendation_text(self, aggregator):
        assert aggregator.recommendations_for(RecommendationTier.AUTHENTIC_CARE) == AUTHENTIC_CARE_RECOMMENDATIONS
        assert aggregator.recommendations_for(RecommendationTier.CAUTION) == CAUTION_RECOMMENDATIONS
        critical = aggregator.recommendations_for(RecommendationTier.CRITICAL)
        assert critical == CRITICAL_RECOMMENDATIONS
        assert critical[0].startswith("CRITICAL")
        assert any("health authorities" in line for line in critical)

    def test_bands_are_configurable(self):
        config = AnalysisConfig(authentic_band=95, caution_band=50)
        aggregator = VerdictAggregator(config)
        assert aggregator.tier_for(90) is RecommendationTier.CAUTION
        assert aggregator.tier_for(55) is RecommendationTier.CAUTION
        assert aggregator.tier_for(45) is RecommendationTier.CRITICAL


class TestAggregate:

    @pytest.mark.parametrize("score,expected", [(90, True), (81, True), (80, False), (60, False)])
    def test_authentic_threshold(self, aggregator, reference_db, score, expected):
        verdict = aggregator.aggregate(_uniform(score), reference_db.get("med-001"))
        assert verdict.authentic is expected
        assert verdict.confidence == score

    def test_high_discrepancy_blocks_authentic(self, aggregator, reference_db):
        config = AnalysisConfig()
        scores = _uniform(100)
        scores["text"] = make_feature_score("text", 60, "", config)  # below 65
        discrepancies = DiscrepancySynthesizer(config).synthesize(scores)

        verdict = aggregator.aggregate(scores, reference_db.get("med-001"), discrepancies)

        assert verdict.confidence == 93
        assert any(d.severity is Severity.HIGH for d in discrepancies)
        assert verdict.authentic is False
        assert verdict.tier is RecommendationTier.CAUTION

    def test_medium_discrepancy_allows_authentic(self, aggregator, reference_db):
        scores = _uniform(100)
        scores["color"] = make_feature_score("color", 60, "", AnalysisConfig())

        verdict = aggregator.aggregate(scores, reference_db.get("med-001"))

        assert verdict.authentic is True
        assert verdict.confidence == 93
        assert verdict.recommendations == AUTHENTIC_CARE_RECOMMENDATIONS

    def test_no_matched_reference_is_never_authentic(self, aggregator):
        verdict = aggregator.aggregate(_uniform(100), None)
        assert verdict.authentic is False
        assert verdict.recommendations == CAUTION_RECOMMENDATIONS

    def test_critical_verdict(self, aggregator, reference_db):
        verdict = aggregator.aggregate(_uniform(40), reference_db.get("med-001"))
        assert verdict.tier is RecommendationTier.CRITICAL
        assert verdict.recommendations == CRITICAL_RECOMMENDATIONS

    def test_authentic_implies_no_high_discrepancy(self, aggregator, reference_db):
        config = AnalysisConfig()
        for mismatched in FEATURE_KEYS:
            scores = _uniform(100)
            scores[mismatched] = make_feature_score(mismatched, 0, "", config)
            discrepancies = DiscrepancySynthesizer(config).synthesize(scores)
            verdict = aggregator.aggregate(scores, reference_db.get("med-001"), discrepancies)
            if verdict.authentic:
                assert all(d.severity is not Severity.HIGH for d in discrepancies)

    def test_components_breakdown(self, aggregator, reference_db):
        verdict = aggregator.aggregate(_uniform(90), reference_db.get("med-001"))
        data = verdict.to_dict()

        assert set(data["components"]) == set(FEATURE_KEYS)
        assert data["tier"] == "authentic_care"

    def test_pure(self, aggregator, reference_db):
        scores = _uniform(77)
        assert aggregator.aggregate(scores, None) == aggregator.aggregate(scores, None)
