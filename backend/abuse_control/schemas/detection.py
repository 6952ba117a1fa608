"""
Detection Settings & Result Schemas
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..models.database import CapType, DetectionAction, PatternType, Severity


class SpikeDetectionSettings(BaseModel):
    """Effective spike detection settings for one project"""
    enabled: bool = True
    threshold_multiplier: float = 3.0
    detection_window_ms: int = 3600000
    baseline_period_ms: int = 86400000
    min_usage: int = 10
    # warning, suspend or none; applies to critical/severe spikes
    suspension_action: str = "suspend"


class ErrorRateSettings(BaseModel):
    """Effective error rate settings for one project"""
    enabled: bool = True
    threshold_percentage: float = 50.0
    min_requests: int = 100
    detection_window_ms: int = 3600000


class PatternSignatureSettings(BaseModel):
    """Effective settings for one pattern signature"""
    pattern_type: PatternType
    enabled: bool = True
    suspend_on_detection: bool = True
    min_occurrences: int
    detection_window_ms: int = 3600000


class SpikeDetectionResult(BaseModel):
    """Spike evaluation for one project/cap type"""
    project_id: UUID
    cap_type: CapType
    current_usage: float
    average_usage: float
    multiplier: float
    threshold: float
    detection_window_ms: int
    spike_detected: bool
    severity: Optional[Severity] = None
    action: DetectionAction = DetectionAction.NONE
    details: Optional[str] = None


class ErrorRateDetectionResult(BaseModel):
    """Error rate evaluation for one project"""
    project_id: UUID
    error_count: int
    total_requests: int
    error_rate: float
    threshold: float
    detection_window_ms: int
    error_rate_detected: bool
    severity: Optional[Severity] = None
    action: DetectionAction = DetectionAction.NONE
    details: Optional[str] = None


class SqlInjectionMatch(BaseModel):
    """Result of scanning one input against the injection rules"""
    matched: bool
    confidence: float = 0.0
    details: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)


class PatternDetectionResult(BaseModel):
    """Positive signature match for one project"""
    project_id: UUID
    pattern_type: PatternType
    severity: Severity
    occurrence_count: int
    detection_window_ms: int
    description: str
    evidence: List[str] = Field(default_factory=list)
    action: DetectionAction = DetectionAction.NONE
    metadata: Dict[str, Any] = Field(default_factory=dict)
