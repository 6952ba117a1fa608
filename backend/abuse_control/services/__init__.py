"""
Business Logic Services
"""

from .audit_service import AuditService
from .quota_service import QuotaManager
from .suspension_service import SuspensionManager
from .spike_service import SpikeDetector
from .error_rate_service import ErrorRateDetector
from .pattern_service import PatternDetector
from .override_service import OverrideManager
from .notification_service import NotificationDispatcher, NotificationPreferenceService
from .detection_engine import ThresholdDetector
from .errors import (
    AbuseControlError,
    ValidationError,
    NotFoundError,
    StorageError,
    DeliveryError,
    QuotaExceededError,
    ProjectSuspendedError,
)

__all__ = [
    "AuditService",
    "QuotaManager",
    "SuspensionManager",
    "SpikeDetector",
    "ErrorRateDetector",
    "PatternDetector",
    "OverrideManager",
    "NotificationDispatcher",
    "NotificationPreferenceService",
    "ThresholdDetector",
    "AbuseControlError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "DeliveryError",
    "QuotaExceededError",
    "ProjectSuspendedError",
]
