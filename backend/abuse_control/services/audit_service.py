"""
Audit Service
Append-only audit trail for suspensions, overrides and background jobs
"""

from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.database import AuditLog

SYSTEM_ACTOR = "system"


class AuditService:
    """
    Writes audit entries inside the caller's transaction, so an entry is
    committed together with the change it describes.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log_event(
        self,
        actor_id: Optional[str],
        action: str,
        target_type: str,
        target_id: Optional[Any],
        metadata: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_id=actor_id or SYSTEM_ACTOR,
            action=action,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            details=_jsonable(metadata or {}),
            request_id=request_id,
            ip_address=ip_address,
            created_at=datetime.utcnow(),
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_events(
        self,
        target_type: Optional[str] = None,
        target_id: Optional[Any] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        """Most recent entries first, optionally filtered"""
        conditions = []
        if target_type:
            conditions.append(AuditLog.target_type == target_type)
        if target_id is not None:
            conditions.append(AuditLog.target_id == str(target_id))
        if action:
            conditions.append(AuditLog.action == action)

        query = select(AuditLog)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(AuditLog.created_at.desc()).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())


def _jsonable(value: Any) -> Any:
    """Convert enums, UUIDs and datetimes so the value fits a JSON column"""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), (str, int)):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
