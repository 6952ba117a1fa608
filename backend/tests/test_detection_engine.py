"""Tests for the shared threshold detector, tier tables and spike config rules."""

from uuid import uuid4

import pytest

from abuse_control.config import Settings
from abuse_control.models import CapType, DetectionAction, Severity
from abuse_control.schemas.detection import SpikeDetectionSettings
from abuse_control.services.detection_engine import ActionRuleTable, SeverityActionMap, ThresholdDetector
from abuse_control.services.error_rate_service import ErrorRateDetector
from abuse_control.services.spike_service import SpikeDetector
from abuse_control.services.thresholds import (
    ERROR_RATE_ACTIONS,
    ERROR_RATE_SEVERITY_TIERS,
    PATTERN_ACTION_RULES,
    SPIKE_ACTIONS,
    SPIKE_SEVERITY_TIERS,
    SEVERITY_RANK,
    get_spike_preset,
    is_safe_config,
    validate_spike_config,
)


# ---------------------------------------------------------------------------
# ThresholdDetector
# ---------------------------------------------------------------------------

class TestThresholdDetector:
    def setup_method(self):
        self.detector = ThresholdDetector(
            name="usage_spike",
            tiers=SPIKE_SEVERITY_TIERS,
            policy=SeverityActionMap(SPIKE_ACTIONS),
            threshold=3.0,
            min_sample=10,
        )

    def test_below_threshold_is_not_detected(self):
        evaluation = self.detector.evaluate(2.99, sample=50)
        assert not evaluation.detected
        assert evaluation.severity is None
        assert evaluation.action == DetectionAction.NONE

    def test_small_sample_is_not_detected(self):
        assert not self.detector.evaluate(50.0, sample=9).detected

    def test_threshold_is_inclusive(self):
        evaluation = self.detector.evaluate(3.0, sample=10)
        assert evaluation.detected
        assert evaluation.severity == Severity.WARNING

    def test_tier_boundaries(self):
        assert self.detector.classify(4.99) == Severity.WARNING
        assert self.detector.classify(5.0) == Severity.CRITICAL
        assert self.detector.classify(9.99) == Severity.CRITICAL
        assert self.detector.classify(10.0) == Severity.SEVERE

    def test_severity_never_decreases_as_value_grows(self):
        values = [3.0 + step * 0.25 for step in range(60)]
        ranks = [SEVERITY_RANK[self.detector.classify(v)] for v in values]
        assert ranks == sorted(ranks)

    def test_detection_below_every_tier_uses_lowest_tier(self):
        detector = ThresholdDetector(
            name="low_threshold",
            tiers=SPIKE_SEVERITY_TIERS,
            policy=SeverityActionMap(SPIKE_ACTIONS),
            threshold=1.5,
        )
        evaluation = detector.evaluate(2.0)
        assert evaluation.detected
        assert evaluation.severity == Severity.WARNING

    def test_severity_value_grades_independently_of_gate(self):
        evaluation = self.detector.evaluate(4.0, sample=100, severity_value=12.0)
        assert evaluation.severity == Severity.SEVERE

    def test_requires_tiers(self):
        with pytest.raises(ValueError):
            ThresholdDetector("empty", [], SeverityActionMap({}), threshold=1)


class TestActionPolicies:
    def test_error_rate_never_suspends(self):
        policy = SeverityActionMap(ERROR_RATE_ACTIONS)
        for severity in Severity:
            assert policy.resolve(severity) != DetectionAction.SUSPEND

    def test_pattern_rules_first_match_wins(self):
        table = ActionRuleTable(PATTERN_ACTION_RULES)
        assert table.resolve(Severity.SEVERE, 1) == DetectionAction.SUSPEND
        assert table.resolve(Severity.CRITICAL, 3) == DetectionAction.SUSPEND
        assert table.resolve(Severity.CRITICAL, 2) == DetectionAction.WARNING
        assert table.resolve(Severity.WARNING, 5) == DetectionAction.WARNING
        assert table.resolve(Severity.WARNING, 4) == DetectionAction.NONE


# ---------------------------------------------------------------------------
# Spike evaluation
# ---------------------------------------------------------------------------

class TestSpikeEvaluation:
    def setup_method(self):
        self.detector = SpikeDetector(None, settings=Settings())
        self.project_id = uuid4()

    def test_four_times_average_is_a_warning(self):
        result = self.detector.evaluate(self.project_id, CapType.DB_QUERIES_PER_DAY, 80, 20)
        assert result.spike_detected
        assert result.multiplier == 4.0
        assert result.severity == Severity.WARNING
        assert result.action == DetectionAction.WARNING

    def test_eleven_times_average_suspends(self):
        result = self.detector.evaluate(self.project_id, CapType.DB_QUERIES_PER_DAY, 220, 20)
        assert result.severity == Severity.SEVERE
        assert result.action == DetectionAction.SUSPEND
        assert "11.00x" in result.details

    def test_quiet_baseline_is_ignored(self):
        result = self.detector.evaluate(self.project_id, CapType.DB_QUERIES_PER_DAY, 500, 5)
        assert not result.spike_detected

    def test_zero_average_is_not_a_spike(self):
        result = self.detector.evaluate(self.project_id, CapType.DB_QUERIES_PER_DAY, 500, 0)
        assert not result.spike_detected
        assert result.multiplier == 0.0

    def test_warning_action_downgrades_suspension(self):
        config = SpikeDetectionSettings(suspension_action="warning")
        result = self.detector.evaluate(self.project_id, CapType.DB_QUERIES_PER_DAY, 220, 20, config)
        assert result.severity == Severity.SEVERE
        assert result.action == DetectionAction.WARNING

    def test_none_action_disables_suspension(self):
        config = SpikeDetectionSettings(suspension_action="none")
        result = self.detector.evaluate(self.project_id, CapType.DB_QUERIES_PER_DAY, 220, 20, config)
        assert result.action == DetectionAction.NONE

    def test_suspension_reason_uses_floored_threshold(self):
        result = self.detector.evaluate(self.project_id, CapType.DB_QUERIES_PER_DAY, 220, 20.5)
        reason = SpikeDetector.suspension_reason(result)
        assert reason.cap_type == CapType.DB_QUERIES_PER_DAY
        assert reason.current_value == 220
        assert reason.limit_exceeded == 61


class TestErrorRateEvaluation:
    def setup_method(self):
        self.detector = ErrorRateDetector(None, settings=Settings())
        self.project_id = uuid4()

    def test_too_few_requests_is_not_detected(self):
        result = self.detector.evaluate(self.project_id, 40, 50)
        assert result.error_rate == 80.0
        assert not result.error_rate_detected

    def test_critical_rate_requests_investigation(self):
        result = self.detector.evaluate(self.project_id, 120, 200)
        assert result.error_rate == 60.0
        assert result.severity == Severity.CRITICAL
        assert result.action == DetectionAction.INVESTIGATE

    def test_severe_rate(self):
        result = self.detector.evaluate(self.project_id, 800, 1000)
        assert result.severity == Severity.SEVERE

    def test_warning_tier_with_lower_threshold(self):
        config = self.detector.default_config().model_copy(update={"threshold_percentage": 30.0})
        result = self.detector.evaluate(self.project_id, 350, 1000, config)
        assert result.severity == Severity.WARNING
        assert result.action == DetectionAction.WARNING

    def test_no_traffic(self):
        result = self.detector.evaluate(self.project_id, 0, 0)
        assert result.error_rate == 0.0
        assert not result.error_rate_detected

    def test_tiers_are_monotonic(self):
        detector = ErrorRateDetector.build_detector(self.detector.default_config())
        ranks = [SEVERITY_RANK[detector.classify(rate)] for rate in range(50, 101)]
        assert ranks == sorted(ranks)
        assert ERROR_RATE_SEVERITY_TIERS[0].severity == Severity.SEVERE


# ---------------------------------------------------------------------------
# Spike configuration
# ---------------------------------------------------------------------------

class TestSpikeConfig:
    def test_defaults_are_valid(self):
        assert validate_spike_config(SpikeDetectionSettings()) == []

    def test_presets(self):
        aggressive = get_spike_preset("aggressive")
        assert aggressive.detection_window_ms == 30 * 60 * 1000
        assert aggressive.min_usage == 5
        assert get_spike_preset("conservative").suspension_action == "warning"

    def test_unknown_preset(self):
        with pytest.raises(ValueError):
            get_spike_preset("relaxed")

    def test_invalid_values_are_reported(self):
        config = SpikeDetectionSettings(
            threshold_multiplier=0.5,
            detection_window_ms=1000,
            min_usage=-1,
            suspension_action="delete",
        )
        errors = validate_spike_config(config)
        assert len(errors) == 4
        assert any("threshold_multiplier" in e for e in errors)

    def test_baseline_must_exceed_window(self):
        config = SpikeDetectionSettings(detection_window_ms=2 * 3600000, baseline_period_ms=2 * 3600000)
        assert validate_spike_config(config) == ["baseline_period_ms must be longer than detection_window_ms"]

    def test_low_threshold_with_suspension_is_unsafe(self):
        assert not is_safe_config(SpikeDetectionSettings(threshold_multiplier=1.5))
        assert is_safe_config(SpikeDetectionSettings(threshold_multiplier=1.5, suspension_action="warning"))
