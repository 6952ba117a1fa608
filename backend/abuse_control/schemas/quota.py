"""
Quota & Suspension Schemas
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..models.database import CapType, SuspensionType


class QuotaInfo(BaseModel):
    """Effective cap for one cap type"""
    cap_type: CapType
    cap_value: int
    is_default: bool = False


class QuotaCheckResult(BaseModel):
    """Outcome of comparing usage with a cap"""
    allowed: bool
    remaining: int
    limit: int
    current_usage: int


class QuotaUsage(BaseModel):
    """Usage against a cap, with the highest warning threshold crossed"""
    cap_type: CapType
    current_usage: int
    limit: int
    percentage: float
    warning_level: Optional[int] = None  # 80, 90 ... or None
    exceeded: bool = False


class SuspensionReason(BaseModel):
    """Why a project was suspended; stored as JSON on the suspension row"""
    cap_type: CapType
    current_value: float = Field(..., ge=0)
    limit_exceeded: float = Field(..., ge=0)
    details: Optional[str] = None


class SuspensionResponse(BaseModel):
    """Suspension record"""
    id: UUID
    project_id: UUID
    reason: dict
    cap_exceeded: CapType
    suspension_type: SuspensionType
    notes: Optional[str]
    suspended_at: datetime
    resolved_at: Optional[datetime]

    class Config:
        from_attributes = True
