"""
Background Job Schemas
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ActionsTaken(BaseModel):
    """Counters of actions a job run took"""
    warnings: int = 0
    suspensions: int = 0
    investigations: int = 0
    notifications: int = 0


class JobResult(BaseModel):
    """Summary of one background job run"""
    job_type: str
    success: bool
    skipped: bool = False
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    projects_checked: int = 0
    projects_failed: int = 0
    detections: List[Dict[str, Any]] = Field(default_factory=list)
    actions_taken: ActionsTaken = Field(default_factory=ActionsTaken)
    patterns_by_type: Dict[str, int] = Field(default_factory=dict)
    error: Optional[str] = None
