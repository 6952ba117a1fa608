"""
Database Models for the abuse-control engine
"""

from .database import (
    Base,
    # Enums
    ProjectStatus,
    CapType,
    Severity,
    DetectionAction,
    SuspensionType,
    PatternType,
    ActivityType,
    OverrideAction,
    NotificationType,
    NotificationPriority,
    NotificationStatus,
    NotificationChannel,
    # Models
    Project,
    ProjectQuota,
    UsageMetric,
    ErrorMetric,
    ActivityEvent,
    Suspension,
    SuspensionHistory,
    SpikeDetection,
    ErrorRateDetection,
    PatternDetection,
    SpikeDetectionConfig,
    ErrorRateDetectionConfig,
    PatternDetectionConfig,
    ManualOverride,
    Notification,
    NotificationPreference,
    AuditLog,
)

__all__ = [
    "Base",
    # Enums
    "ProjectStatus",
    "CapType",
    "Severity",
    "DetectionAction",
    "SuspensionType",
    "PatternType",
    "ActivityType",
    "OverrideAction",
    "NotificationType",
    "NotificationPriority",
    "NotificationStatus",
    "NotificationChannel",
    # Models
    "Project",
    "ProjectQuota",
    "UsageMetric",
    "ErrorMetric",
    "ActivityEvent",
    "Suspension",
    "SuspensionHistory",
    "SpikeDetection",
    "ErrorRateDetection",
    "PatternDetection",
    "SpikeDetectionConfig",
    "ErrorRateDetectionConfig",
    "PatternDetectionConfig",
    "ManualOverride",
    "Notification",
    "NotificationPreference",
    "AuditLog",
]
