"""
Manual Override Schemas
"""

from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel

from ..models.database import OverrideAction, ProjectStatus


class ManualOverrideRequest(BaseModel):
    """
    Operator override request.
    Fields are deliberately loose; OverrideManager.validate reports problems
    as readable messages instead of pydantic errors.
    """
    project_id: UUID
    action: str
    reason: str = ""
    new_caps: Optional[Dict[str, int]] = None
    notes: Optional[str] = None


class PreviousStateSnapshot(BaseModel):
    """Status and caps captured before an override is applied"""
    status: ProjectStatus
    caps: Dict[str, int]


class OverrideResult(BaseModel):
    """Outcome of a successful override"""
    override_id: UUID
    project_id: UUID
    action: OverrideAction
    previous_state: PreviousStateSnapshot
    new_state: PreviousStateSnapshot
    performed_at: datetime


class OverrideStatistics(BaseModel):
    """Override counts for dashboards"""
    total: int
    by_action: Dict[str, int]
    recent_count: int


class ManualOverrideResponse(BaseModel):
    """Persisted override record"""
    id: UUID
    project_id: UUID
    action: OverrideAction
    reason: str
    notes: Optional[str]
    previous_caps: Dict[str, int]
    new_caps: Optional[Dict[str, int]]
    previous_status: ProjectStatus
    new_status: ProjectStatus
    performed_by: str
    ip_address: Optional[str]
    performed_at: datetime

    class Config:
        from_attributes = True
