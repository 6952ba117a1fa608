"""
Threshold & Configuration Model
Default caps, cap ranges, severity tier tables, action tables and the spike
detection presets shared by every detector.
"""

from typing import Dict, List, NamedTuple, Optional

from ..models.database import CapType, DetectionAction, PatternType, Severity
from ..schemas.detection import SpikeDetectionSettings


# ============================================================================
# CAPS
# ============================================================================

DEFAULT_HARD_CAPS: Dict[CapType, int] = {
    CapType.DB_QUERIES_PER_DAY: 10_000,
    CapType.REALTIME_CONNECTIONS: 100,
    CapType.STORAGE_UPLOADS_PER_DAY: 1_000,
    CapType.FUNCTION_INVOCATIONS_PER_DAY: 5_000,
}

# Inclusive range for every cap, whether set directly or through an override
CAP_VALUE_MIN = 0
CAP_VALUE_MAX = 1_000_000
OVERRIDE_REASON_MAX_LENGTH = 1000

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000

# Caps measured as a running total over the window; the rest are gauges
# where the most recent sample in the window is the current value.
CAP_MEASUREMENT_WINDOW_MS: Dict[CapType, int] = {
    CapType.DB_QUERIES_PER_DAY: DAY_MS,
    CapType.REALTIME_CONNECTIONS: 5 * MINUTE_MS,
    CapType.STORAGE_UPLOADS_PER_DAY: DAY_MS,
    CapType.FUNCTION_INVOCATIONS_PER_DAY: DAY_MS,
}
GAUGE_CAPS = frozenset({CapType.REALTIME_CONNECTIONS})


def parse_cap_type(value) -> Optional[CapType]:
    """CapType for a raw string, or None if unknown"""
    if isinstance(value, CapType):
        return value
    try:
        return CapType(value)
    except ValueError:
        return None


# ============================================================================
# SEVERITY TIERS
# ============================================================================

class SeverityTier(NamedTuple):
    severity: Severity
    min_value: float


SEVERITY_RANK: Dict[Severity, int] = {
    Severity.WARNING: 1,
    Severity.CRITICAL: 2,
    Severity.SEVERE: 3,
}


def severity_at_least(severity: Severity, minimum: Severity) -> bool:
    return SEVERITY_RANK[severity] >= SEVERITY_RANK[minimum]


SPIKE_SEVERITY_TIERS: List[SeverityTier] = [
    SeverityTier(Severity.SEVERE, 10.0),
    SeverityTier(Severity.CRITICAL, 5.0),
    SeverityTier(Severity.WARNING, 3.0),
]

ERROR_RATE_SEVERITY_TIERS: List[SeverityTier] = [
    SeverityTier(Severity.SEVERE, 75.0),
    SeverityTier(Severity.CRITICAL, 50.0),
    SeverityTier(Severity.WARNING, 30.0),
]

# Average confidence across matched inputs
SQL_INJECTION_SEVERITY_TIERS: List[SeverityTier] = [
    SeverityTier(Severity.SEVERE, 0.9),
    SeverityTier(Severity.CRITICAL, 0.7),
    SeverityTier(Severity.WARNING, 0.0),
]

AUTH_BRUTE_FORCE_SEVERITY_TIERS: List[SeverityTier] = [
    SeverityTier(Severity.SEVERE, 50),
    SeverityTier(Severity.CRITICAL, 25),
    SeverityTier(Severity.WARNING, 0),
]

RAPID_KEY_CREATION_SEVERITY_TIERS: List[SeverityTier] = [
    SeverityTier(Severity.SEVERE, 20),
    SeverityTier(Severity.CRITICAL, 10),
    SeverityTier(Severity.WARNING, 0),
]

PATTERN_SEVERITY_TIERS: Dict[PatternType, List[SeverityTier]] = {
    PatternType.SQL_INJECTION: SQL_INJECTION_SEVERITY_TIERS,
    PatternType.AUTH_BRUTE_FORCE: AUTH_BRUTE_FORCE_SEVERITY_TIERS,
    PatternType.RAPID_KEY_CREATION: RAPID_KEY_CREATION_SEVERITY_TIERS,
}

# Confidence attached to a single matched injection rule
RULE_CONFIDENCE: Dict[Severity, float] = {
    Severity.SEVERE: 0.95,
    Severity.CRITICAL: 0.8,
    Severity.WARNING: 0.6,
}


# ============================================================================
# ACTION TABLES
# ============================================================================

SPIKE_ACTIONS: Dict[Severity, DetectionAction] = {
    Severity.SEVERE: DetectionAction.SUSPEND,
    Severity.CRITICAL: DetectionAction.SUSPEND,
    Severity.WARNING: DetectionAction.WARNING,
}

# Error rates can climb because of platform defects, so they never suspend
ERROR_RATE_ACTIONS: Dict[Severity, DetectionAction] = {
    Severity.SEVERE: DetectionAction.INVESTIGATE,
    Severity.CRITICAL: DetectionAction.INVESTIGATE,
    Severity.WARNING: DetectionAction.WARNING,
}


class PatternActionRule(NamedTuple):
    min_severity: Severity
    min_occurrences: int
    action: DetectionAction


# Evaluated top to bottom, first match wins
PATTERN_ACTION_RULES: List[PatternActionRule] = [
    PatternActionRule(Severity.SEVERE, 1, DetectionAction.SUSPEND),
    PatternActionRule(Severity.CRITICAL, 3, DetectionAction.SUSPEND),
    PatternActionRule(Severity.CRITICAL, 1, DetectionAction.WARNING),
    PatternActionRule(Severity.WARNING, 5, DetectionAction.WARNING),
]


# ============================================================================
# PATTERN DEFAULTS
# ============================================================================

PATTERN_MIN_OCCURRENCES: Dict[PatternType, int] = {
    PatternType.SQL_INJECTION: 3,
    PatternType.AUTH_BRUTE_FORCE: 10,
    PatternType.RAPID_KEY_CREATION: 5,
}

# Cap recorded on the suspension reason when a pattern suspends a project
PATTERN_SUSPENSION_CAP: Dict[PatternType, CapType] = {
    PatternType.SQL_INJECTION: CapType.DB_QUERIES_PER_DAY,
    PatternType.AUTH_BRUTE_FORCE: CapType.FUNCTION_INVOCATIONS_PER_DAY,
    PatternType.RAPID_KEY_CREATION: CapType.FUNCTION_INVOCATIONS_PER_DAY,
}

MAX_EVIDENCE_ITEMS = 10


# ============================================================================
# SPIKE CONFIG PRESETS & VALIDATION
# ============================================================================

SPIKE_CONFIG_PRESETS: Dict[str, SpikeDetectionSettings] = {
    "default": SpikeDetectionSettings(),
    # Faster reaction for free-tier or previously abusive projects
    "aggressive": SpikeDetectionSettings(
        threshold_multiplier=5.0,
        detection_window_ms=30 * MINUTE_MS,
        baseline_period_ms=12 * HOUR_MS,
        min_usage=5,
        suspension_action="suspend",
    ),
    # Bursty workloads: only warn
    "conservative": SpikeDetectionSettings(
        threshold_multiplier=5.0,
        detection_window_ms=HOUR_MS,
        baseline_period_ms=48 * HOUR_MS,
        min_usage=20,
        suspension_action="warning",
    ),
}

SPIKE_SUSPENSION_ACTIONS = ("warning", "suspend", "none")


def get_spike_preset(name: str) -> SpikeDetectionSettings:
    try:
        return SPIKE_CONFIG_PRESETS[name].model_copy()
    except KeyError:
        raise ValueError(f"Unknown spike detection preset: {name}")


def validate_spike_config(config: SpikeDetectionSettings) -> List[str]:
    """Return readable problems with a spike configuration (empty when valid)"""
    errors = []

    if not 1.0 <= config.threshold_multiplier <= 100.0:
        errors.append("threshold_multiplier must be between 1.0 and 100.0")

    if not MINUTE_MS <= config.detection_window_ms <= DAY_MS:
        errors.append("detection_window_ms must be between 1 minute and 24 hours")

    if not HOUR_MS <= config.baseline_period_ms <= 30 * DAY_MS:
        errors.append("baseline_period_ms must be between 1 hour and 30 days")
    elif config.baseline_period_ms <= config.detection_window_ms:
        errors.append("baseline_period_ms must be longer than detection_window_ms")

    if config.min_usage < 0:
        errors.append("min_usage must be a non-negative integer")

    if config.suspension_action not in SPIKE_SUSPENSION_ACTIONS:
        errors.append("suspension_action must be one of: warning, suspend, none")

    return errors


def is_safe_config(config: SpikeDetectionSettings) -> bool:
    """Auto-suspension with a threshold under 2x trips on ordinary traffic"""
    return not (config.suspension_action == "suspend" and config.threshold_multiplier < 2.0)
