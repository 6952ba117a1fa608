"""
Pydantic schemas shared by the services and background jobs
"""

from .quota import (
    QuotaInfo,
    QuotaCheckResult,
    QuotaUsage,
    SuspensionReason,
    SuspensionResponse,
)
from .detection import (
    SpikeDetectionSettings,
    ErrorRateSettings,
    PatternSignatureSettings,
    SpikeDetectionResult,
    ErrorRateDetectionResult,
    SqlInjectionMatch,
    PatternDetectionResult,
)
from .override import (
    ManualOverrideRequest,
    PreviousStateSnapshot,
    OverrideResult,
    OverrideStatistics,
    ManualOverrideResponse,
)
from .notification import (
    DeliveryResult,
    NotificationPreferenceInput,
    EffectivePreference,
)
from .jobs import ActionsTaken, JobResult

__all__ = [
    # Quota
    "QuotaInfo",
    "QuotaCheckResult",
    "QuotaUsage",
    "SuspensionReason",
    "SuspensionResponse",
    # Detection
    "SpikeDetectionSettings",
    "ErrorRateSettings",
    "PatternSignatureSettings",
    "SpikeDetectionResult",
    "ErrorRateDetectionResult",
    "SqlInjectionMatch",
    "PatternDetectionResult",
    # Override
    "ManualOverrideRequest",
    "PreviousStateSnapshot",
    "OverrideResult",
    "OverrideStatistics",
    "ManualOverrideResponse",
    # Notification
    "DeliveryResult",
    "NotificationPreferenceInput",
    "EffectivePreference",
    # Jobs
    "ActionsTaken",
    "JobResult",
]
