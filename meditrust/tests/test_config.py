"""
Test Suite for Analysis Configuration
=====================================
"""

import pytest

from meditrust.config import (
    AnalysisConfig, FEATURE_KEYS, FEATURE_PRECEDENCE, QR_CODE, SHAPE, TEXT
)


class TestDefaults:

    def test_feature_keys(self):
        assert FEATURE_KEYS == ("color", "shape", "size", "text", "qrCode", "packaging")
        assert set(FEATURE_PRECEDENCE) == set(FEATURE_KEYS)
        assert FEATURE_PRECEDENCE[:2] == (TEXT, QR_CODE)

    def test_default_bands(self, analysis_config):
        assert analysis_config.authentic_threshold == 80
        assert analysis_config.authentic_band == 85
        assert analysis_config.caution_band == 70
        assert analysis_config.timeout_seconds > 0

    def test_default_severities(self, analysis_config):
        assert analysis_config.severities[TEXT] == "high"
        assert analysis_config.severities[QR_CODE] == "high"
        assert analysis_config.severities[SHAPE] == "medium"

    def test_equal_default_weights(self, analysis_config):
        assert {analysis_config.weight(k) for k in FEATURE_KEYS} == {1.0}


class TestValidation:

    def test_missing_threshold_rejected(self):
        with pytest.raises(ValueError, match="missing"):
            AnalysisConfig(match_thresholds={"color": 70})

    def test_threshold_out_of_range(self):
        thresholds = {k: 50 for k in FEATURE_KEYS}
        thresholds["color"] = 120
        with pytest.raises(ValueError):
            AnalysisConfig(match_thresholds=thresholds)

    def test_negative_weight_rejected(self):
        weights = {k: 1.0 for k in FEATURE_KEYS}
        weights["size"] = -1.0
        with pytest.raises(ValueError):
            AnalysisConfig(weights=weights)

    def test_all_zero_weights_rejected(self):
        with pytest.raises(ValueError):
            AnalysisConfig(weights={k: 0.0 for k in FEATURE_KEYS})

    def test_unknown_severity_rejected(self):
        severities = dict(AnalysisConfig().severities)
        severities["color"] = "critical"
        with pytest.raises(ValueError):
            AnalysisConfig(severities=severities)

    def test_inverted_bands_rejected(self):
        with pytest.raises(ValueError):
            AnalysisConfig(caution_band=90, authentic_band=85)

    @pytest.mark.parametrize("floor", [-1, 101])
    def test_feature_floor_out_of_range(self, floor):
        with pytest.raises(ValueError, match="feature_floor"):
            AnalysisConfig(feature_floor=floor)

    def test_feature_floor_must_stay_below_thresholds(self):
        """A floor at a feature's threshold would turn a degraded feature into a match."""
        with pytest.raises(ValueError, match="qrCode"):
            AnalysisConfig(feature_floor=60)
        assert AnalysisConfig(feature_floor=59).feature_floor == 59

    @pytest.mark.parametrize("value", [-0.5, 100.5])
    def test_min_viable_match_out_of_range(self, value):
        with pytest.raises(ValueError, match="min_viable_match"):
            AnalysisConfig(min_viable_match=value)

    def test_min_viable_match_from_env_validated(self, monkeypatch):
        monkeypatch.setenv("MEDITRUST_MIN_VIABLE_MATCH", "150")
        with pytest.raises(ValueError, match="min_viable_match"):
            AnalysisConfig.from_env()

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValueError):
            AnalysisConfig(timeout_seconds=0)

    def test_with_overrides_validates(self, analysis_config):
        changed = analysis_config.with_overrides(timeout_seconds=1.5)
        assert changed.timeout_seconds == 1.5
        assert analysis_config.timeout_seconds == 5.0
        with pytest.raises(ValueError):
            analysis_config.with_overrides(min_width=0)


class TestFromEnv:

    def test_unset_keeps_defaults(self, monkeypatch):
        for name in ("MEDITRUST_TIMEOUT_SECONDS", "MEDITRUST_MIN_WIDTH", "MEDITRUST_MIN_HEIGHT",
                     "MEDITRUST_MAX_DIMENSION", "MEDITRUST_MIN_VIABLE_MATCH",
                     "MEDITRUST_AUTHENTIC_THRESHOLD", "MEDITRUST_PARALLEL_EXTRACTION"):
            monkeypatch.delenv(name, raising=False)
        assert AnalysisConfig.from_env() == AnalysisConfig()

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("MEDITRUST_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("MEDITRUST_MIN_WIDTH", "128")
        monkeypatch.setenv("MEDITRUST_AUTHENTIC_THRESHOLD", "75")
        monkeypatch.setenv("MEDITRUST_PARALLEL_EXTRACTION", "true")

        config = AnalysisConfig.from_env()

        assert config.timeout_seconds == 2.5
        assert config.min_width == 128
        assert config.authentic_threshold == 75
        assert config.parallel_extraction is True

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("MEDITRUST_TIMEOUT_SECONDS", "soon")
        with pytest.raises(ValueError, match="MEDITRUST_TIMEOUT_SECONDS"):
            AnalysisConfig.from_env()
