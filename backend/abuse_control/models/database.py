"""
Abuse-Control Database Models
PostgreSQL with SQLAlchemy ORM (SQLite-compatible column types)
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import uuid4

from sqlalchemy import (
    Column, String, Text, Integer, Float, Boolean, DateTime,
    ForeignKey, Enum, JSON, Index, UniqueConstraint, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import UUID

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class ProjectStatus(str, PyEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class CapType(str, PyEnum):
    DB_QUERIES_PER_DAY = "db_queries_per_day"
    REALTIME_CONNECTIONS = "realtime_connections"
    STORAGE_UPLOADS_PER_DAY = "storage_uploads_per_day"
    FUNCTION_INVOCATIONS_PER_DAY = "function_invocations_per_day"


class Severity(str, PyEnum):
    WARNING = "warning"
    CRITICAL = "critical"
    SEVERE = "severe"


class DetectionAction(str, PyEnum):
    NONE = "none"
    WARNING = "warning"
    SUSPEND = "suspension"
    INVESTIGATE = "investigate"


class SuspensionType(str, PyEnum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class PatternType(str, PyEnum):
    SQL_INJECTION = "sql_injection"
    AUTH_BRUTE_FORCE = "auth_brute_force"
    RAPID_KEY_CREATION = "rapid_key_creation"


class ActivityType(str, PyEnum):
    QUERY = "query"                # raw query / request text
    AUTH_FAILURE = "auth_failure"  # failed sign-in attempt
    KEY_CREATED = "key_created"    # API key issued


class OverrideAction(str, PyEnum):
    UNSUSPEND = "unsuspend"
    INCREASE_CAPS = "increase_caps"
    BOTH = "both"


class NotificationType(str, PyEnum):
    PROJECT_SUSPENDED = "project_suspended"
    PROJECT_UNSUSPENDED = "project_unsuspended"
    QUOTA_WARNING = "quota_warning"
    USAGE_SPIKE_DETECTED = "usage_spike_detected"
    ERROR_RATE_DETECTED = "error_rate_detected"
    MALICIOUS_PATTERN_DETECTED = "malicious_pattern_detected"


class NotificationPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationStatus(str, PyEnum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


class NotificationChannel(str, PyEnum):
    EMAIL = "email"
    IN_APP = "in_app"
    SMS = "sms"
    WEBHOOK = "webhook"


# ============================================================================
# PROJECTS & QUOTAS
# ============================================================================

class Project(Base):
    """Tenant project; status is only changed by the suspension service"""
    __tablename__ = "projects"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    organization_name = Column(String(255))
    owner_id = Column(UUID(as_uuid=True), index=True)
    owner_email = Column(String(255))
    environment = Column(String(50), default="production", nullable=False)

    status = Column(Enum(ProjectStatus), default=ProjectStatus.ACTIVE, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    quotas = relationship("ProjectQuota", back_populates="project", cascade="all, delete-orphan")
    suspensions = relationship("Suspension", back_populates="project", cascade="all, delete-orphan")


class ProjectQuota(Base):
    """Per-project hard cap for one cap type"""
    __tablename__ = "project_quotas"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    cap_type = Column(Enum(CapType), nullable=False)
    cap_value = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    project = relationship("Project", back_populates="quotas")

    __table_args__ = (
        UniqueConstraint('project_id', 'cap_type', name='uq_project_quota_cap'),
    )


# ============================================================================
# TIME SERIES
# ============================================================================

class UsageMetric(Base):
    """Append-only usage sample written by calling services"""
    __tablename__ = "usage_metrics"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    metric_type = Column(Enum(CapType), nullable=False)
    metric_value = Column(Integer, nullable=False, default=1)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_usage_project_metric_time', 'project_id', 'metric_type', 'recorded_at'),
    )


class ErrorMetric(Base):
    """Request/error counters aggregated by the API gateway"""
    __tablename__ = "error_metrics"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_error_metrics_project_time', 'project_id', 'recorded_at'),
    )


class ActivityEvent(Base):
    """Security-relevant activity consumed by the pattern detector"""
    __tablename__ = "activity_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    event_type = Column(Enum(ActivityType), nullable=False)
    payload = Column(Text)
    ip_address = Column(String(45))
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_activity_project_type_time', 'project_id', 'event_type', 'recorded_at'),
    )


# ============================================================================
# SUSPENSIONS
# ============================================================================

class Suspension(Base):
    """Suspension record; resolved_at is NULL while the suspension is in force"""
    __tablename__ = "suspensions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)

    # {cap_type, current_value, limit_exceeded, details}
    reason = Column(JSONType, nullable=False, default=dict)
    cap_exceeded = Column(Enum(CapType), nullable=False)
    suspension_type = Column(Enum(SuspensionType), default=SuspensionType.AUTOMATIC, nullable=False)
    notes = Column(Text)

    suspended_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime)

    project = relationship("Project", back_populates="suspensions")

    __table_args__ = (
        Index(
            'uq_suspensions_open_per_project',
            'project_id',
            unique=True,
            postgresql_where=text('resolved_at IS NULL'),
            sqlite_where=text('resolved_at IS NULL'),
        ),
        Index('idx_suspensions_project_time', 'project_id', 'suspended_at'),
    )


class SuspensionHistory(Base):
    """Chronological log of suspend/unsuspend transitions"""
    __tablename__ = "suspension_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    suspension_id = Column(UUID(as_uuid=True), ForeignKey("suspensions.id", ondelete="SET NULL"))
    action = Column(String(50), nullable=False)  # suspended, unsuspended
    reason = Column(JSONType)
    notes = Column(Text)
    performed_by = Column(String(255))
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_suspension_history_project', 'project_id', 'occurred_at'),
    )


# ============================================================================
# DETECTION LOGS
# ============================================================================

class SpikeDetection(Base):
    """Usage spike detected for one project/cap type"""
    __tablename__ = "spike_detections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    cap_type = Column(Enum(CapType), nullable=False)

    current_usage = Column(Float, nullable=False)
    average_usage = Column(Float, nullable=False)
    multiplier = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    detection_window_ms = Column(Integer, nullable=False)

    severity = Column(Enum(Severity), nullable=False)
    action_taken = Column(Enum(DetectionAction), default=DetectionAction.NONE, nullable=False)
    description = Column(Text)

    detected_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_spike_project_time', 'project_id', 'detected_at'),
    )


class ErrorRateDetection(Base):
    """High error rate detected for one project"""
    __tablename__ = "error_rate_detections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)

    error_count = Column(Integer, nullable=False)
    total_requests = Column(Integer, nullable=False)
    error_rate = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    detection_window_ms = Column(Integer, nullable=False)

    severity = Column(Enum(Severity), nullable=False)
    action_taken = Column(Enum(DetectionAction), default=DetectionAction.NONE, nullable=False)
    description = Column(Text)

    detected_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_error_rate_project_time', 'project_id', 'detected_at'),
    )


class PatternDetection(Base):
    """Malicious pattern signature match for one project"""
    __tablename__ = "pattern_detections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    pattern_type = Column(Enum(PatternType), nullable=False)

    occurrence_count = Column(Integer, nullable=False)
    detection_window_ms = Column(Integer, nullable=False)
    evidence = Column(JSONType, default=list)

    severity = Column(Enum(Severity), nullable=False)
    action_taken = Column(Enum(DetectionAction), default=DetectionAction.NONE, nullable=False)
    description = Column(Text)

    detected_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_pattern_project_time', 'project_id', 'detected_at'),
    )


# ============================================================================
# PER-PROJECT DETECTION CONFIG
# ============================================================================

class SpikeDetectionConfig(Base):
    """Per-project override of the spike detection defaults"""
    __tablename__ = "spike_detection_config"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True)

    enabled = Column(Boolean, default=True, nullable=False)
    threshold_multiplier = Column(Float)
    detection_window_ms = Column(Integer)
    baseline_period_ms = Column(Integer)
    min_usage = Column(Integer)
    suspension_action = Column(String(20))  # warning, suspend, none

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ErrorRateDetectionConfig(Base):
    """Per-project override of the error rate defaults"""
    __tablename__ = "error_rate_detection_config"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True)

    enabled = Column(Boolean, default=True, nullable=False)
    threshold_percentage = Column(Float)
    min_requests = Column(Integer)
    detection_window_ms = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PatternDetectionConfig(Base):
    """Per-project, per-signature pattern detection settings"""
    __tablename__ = "pattern_detection_config"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    pattern_type = Column(Enum(PatternType), nullable=False)

    enabled = Column(Boolean, default=True, nullable=False)
    suspend_on_detection = Column(Boolean, default=False, nullable=False)
    min_occurrences = Column(Integer)
    detection_window_ms = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('project_id', 'pattern_type', name='uq_pattern_config_project_type'),
    )


# ============================================================================
# MANUAL OVERRIDES
# ============================================================================

class ManualOverride(Base):
    """Operator override with before/after snapshots; never modified"""
    __tablename__ = "manual_overrides"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)

    action = Column(Enum(OverrideAction), nullable=False)
    reason = Column(Text, nullable=False)
    notes = Column(Text)

    previous_caps = Column(JSONType, nullable=False, default=dict)
    new_caps = Column(JSONType)
    previous_status = Column(Enum(ProjectStatus), nullable=False)
    new_status = Column(Enum(ProjectStatus), nullable=False)

    performed_by = Column(String(255), nullable=False)
    ip_address = Column(String(45))
    performed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_overrides_project_time', 'project_id', 'performed_at'),
    )


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class Notification(Base):
    """Queued notification; the table doubles as the delivery queue"""
    __tablename__ = "notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    recipient_id = Column(UUID(as_uuid=True))
    recipient_email = Column(String(255))

    notification_type = Column(Enum(NotificationType), nullable=False)
    priority = Column(Enum(NotificationPriority), default=NotificationPriority.MEDIUM, nullable=False)
    subject = Column(String(500), nullable=False)
    body = Column(Text, nullable=False)
    data = Column(JSONType, default=dict)
    channels = Column(JSONType, default=list)
    delivered_channels = Column(JSONType, default=list)

    status = Column(Enum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, default=datetime.utcnow)
    error_message = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    delivered_at = Column(DateTime)

    __table_args__ = (
        Index('idx_notifications_queue', 'status', 'next_attempt_at'),
        Index('idx_notifications_project', 'project_id', 'created_at'),
    )


class NotificationPreference(Base):
    """Per-user delivery preference; NULL project_id applies to every project"""
    __tablename__ = "notification_preferences"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"))
    notification_type = Column(Enum(NotificationType), nullable=False)

    enabled = Column(Boolean, default=True, nullable=False)
    channels = Column(JSONType, default=list)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'project_id', 'notification_type', name='uq_notification_preference'),
    )


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(Base):
    """Audit trail for all state-changing abuse-control actions"""
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)

    actor_id = Column(String(255))  # user id, or "system" for background jobs
    action = Column(String(100), nullable=False)  # e.g., "project_suspended"
    target_type = Column(String(100), nullable=False)  # e.g., "project"
    target_id = Column(String(255))

    details = Column(JSONType, default=dict)

    request_id = Column(String(100))
    ip_address = Column(String(45))

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_target', 'target_type', 'target_id', 'created_at'),
    )
