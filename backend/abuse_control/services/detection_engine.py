"""
Threshold Detection Engine
Shared evaluation for the spike, error-rate and pattern detectors:
measurement -> threshold + minimum-sample guard -> severity tier -> action.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..models.database import DetectionAction, Severity
from .thresholds import PatternActionRule, SeverityTier, severity_at_least


@dataclass(frozen=True)
class Evaluation:
    detected: bool
    value: float
    severity: Optional[Severity]
    action: DetectionAction


class ActionPolicy:
    """Maps a severity (and occurrence count) to an action"""

    def resolve(self, severity: Severity, occurrences: int = 1) -> DetectionAction:
        raise NotImplementedError


class SeverityActionMap(ActionPolicy):
    """Action is a pure function of severity"""

    def __init__(self, actions: Dict[Severity, DetectionAction]):
        self.actions = dict(actions)

    def resolve(self, severity: Severity, occurrences: int = 1) -> DetectionAction:
        return self.actions.get(severity, DetectionAction.NONE)


class ActionRuleTable(ActionPolicy):
    """Ordered (min severity, min occurrences) rules, first match wins"""

    def __init__(self, rules: Sequence[PatternActionRule]):
        self.rules = list(rules)

    def resolve(self, severity: Severity, occurrences: int = 1) -> DetectionAction:
        for rule in self.rules:
            if severity_at_least(severity, rule.min_severity) and occurrences >= rule.min_occurrences:
                return rule.action
        return DetectionAction.NONE


class ThresholdDetector:
    """
    Generic detector parameterised by its tier table, action policy,
    detection threshold and minimum sample size.

    A measurement is detected when value >= threshold and sample >= min_sample.
    Severity is the highest tier whose floor the severity value reaches; a
    detection below every tier falls back to the lowest tier so that
    severity never decreases as the value grows.
    """

    def __init__(
        self,
        name: str,
        tiers: List[SeverityTier],
        policy: ActionPolicy,
        threshold: float,
        min_sample: float = 0,
    ):
        if not tiers:
            raise ValueError("At least one severity tier is required")
        self.name = name
        self.tiers = sorted(tiers, key=lambda tier: tier.min_value, reverse=True)
        self.policy = policy
        self.threshold = threshold
        self.min_sample = min_sample

    def classify(self, value: float) -> Severity:
        for tier in self.tiers:
            if value >= tier.min_value:
                return tier.severity
        return self.tiers[-1].severity

    def is_detected(self, value: float, sample: Optional[float] = None) -> bool:
        if value < self.threshold:
            return False
        if sample is not None and sample < self.min_sample:
            return False
        return True

    def evaluate(
        self,
        value: float,
        sample: Optional[float] = None,
        severity_value: Optional[float] = None,
        occurrences: int = 1,
    ) -> Evaluation:
        """
        Evaluate one measurement.
        severity_value lets a detector gate on one quantity (e.g. a count)
        and grade on another (e.g. an average confidence).
        """
        if not self.is_detected(value, sample):
            return Evaluation(detected=False, value=value, severity=None, action=DetectionAction.NONE)

        severity = self.classify(value if severity_value is None else severity_value)
        return Evaluation(
            detected=True,
            value=value,
            severity=severity,
            action=self.policy.resolve(severity, occurrences),
        )
