"""
Manual Override Workflow
Operator-initiated unsuspension and cap increases, always validated,
snapshotted and audited.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..models.database import ManualOverride, OverrideAction, Project
from ..schemas.override import (
    ManualOverrideRequest, OverrideResult, OverrideStatistics, PreviousStateSnapshot,
)
from .audit_service import AuditService
from .errors import NotFoundError, StorageError, ValidationError
from .quota_service import QuotaManager
from .suspension_service import SuspensionManager
from .thresholds import CAP_VALUE_MAX, CAP_VALUE_MIN, OVERRIDE_REASON_MAX_LENGTH, parse_cap_type

logger = logging.getLogger(__name__)

CAP_ACTIONS = (OverrideAction.INCREASE_CAPS, OverrideAction.BOTH)
STATUS_ACTIONS = (OverrideAction.UNSUSPEND, OverrideAction.BOTH)


class OverrideManager:
    """
    perform() applies caps, status and the override record inside one
    savepoint of the caller's transaction. If any step raises, all of
    them are rolled back and the session stays usable.
    """

    def __init__(
        self,
        db: AsyncSession,
        quotas: Optional[QuotaManager] = None,
        suspensions: Optional[SuspensionManager] = None,
        audit: Optional[AuditService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.audit = audit or AuditService(db)
        self.quotas = quotas or QuotaManager(db, settings=self.settings, clock=clock)
        self.suspensions = suspensions or SuspensionManager(
            db, audit=self.audit, settings=self.settings, clock=clock
        )

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self, request: ManualOverrideRequest) -> List[str]:
        """Readable validation errors; an empty list means the request is valid"""
        errors = []

        reason = (request.reason or "").strip()
        if not reason:
            errors.append("Reason is required for manual override")
        elif len(reason) > OVERRIDE_REASON_MAX_LENGTH:
            errors.append(f"Reason cannot exceed {OVERRIDE_REASON_MAX_LENGTH} characters")

        try:
            action = OverrideAction(request.action)
        except ValueError:
            errors.append("Invalid action type. Must be unsuspend, increase_caps, or both")
            return errors

        if action in CAP_ACTIONS:
            if not request.new_caps:
                errors.append("newCaps must be provided when action is increase_caps or both")
            else:
                for cap_name, value in request.new_caps.items():
                    if parse_cap_type(cap_name) is None:
                        errors.append(f"Invalid cap type: {cap_name}")
                    elif not CAP_VALUE_MIN <= value <= CAP_VALUE_MAX:
                        errors.append(
                            f"Invalid value for {cap_name}: must be between "
                            f"{CAP_VALUE_MIN} and {CAP_VALUE_MAX:,}"
                        )
        return errors

    # =========================================================================
    # PERFORM
    # =========================================================================

    async def snapshot(self, project: Project) -> PreviousStateSnapshot:
        return PreviousStateSnapshot(
            status=project.status,
            caps=await self.quotas.get_quota_map(project.id),
        )

    async def perform(
        self,
        request: ManualOverrideRequest,
        performed_by: str,
        ip_address: Optional[str] = None,
    ) -> OverrideResult:
        errors = self.validate(request)
        if errors:
            raise ValidationError(errors)

        action = OverrideAction(request.action)
        project = await self.db.get(Project, request.project_id)
        if project is None:
            raise NotFoundError("Project", request.project_id)

        previous = await self.snapshot(project)
        now = self.clock()

        try:
            # Caps, status and the override record land together or not at all
            async with self.db.begin_nested():
                record, current = await self._apply(
                    project, request, action, previous, performed_by, ip_address, now
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Manual override failed for project {project.id}: {e}") from e

        logger.info(
            f"Manual override {action.value} on project {project.id} by {performed_by}: "
            f"{previous.status.value} -> {current.status.value}"
        )
        return OverrideResult(
            override_id=record.id,
            project_id=project.id,
            action=action,
            previous_state=previous,
            new_state=current,
            performed_at=now,
        )

    async def _apply(self, project, request, action, previous, performed_by, ip_address, now):
        if action in CAP_ACTIONS:
            for cap_name, value in request.new_caps.items():
                await self.quotas.update_quota(project.id, parse_cap_type(cap_name), value)

        if action in STATUS_ACTIONS:
            await self.suspensions.unsuspend(
                project.id,
                notes=request.notes or f"Manual override: {request.reason.strip()}",
                performed_by=performed_by,
            )

        await self.db.refresh(project)
        current = await self.snapshot(project)

        record = ManualOverride(
            project_id=project.id,
            action=action,
            reason=request.reason.strip(),
            notes=request.notes,
            previous_caps=previous.caps,
            new_caps=current.caps if action in CAP_ACTIONS else None,
            previous_status=previous.status,
            new_status=current.status,
            performed_by=performed_by,
            ip_address=ip_address,
            performed_at=now,
        )
        self.db.add(record)
        await self.db.flush()

        await self.audit.log_event(
            actor_id=performed_by,
            action="manual_override",
            target_type="project",
            target_id=project.id,
            metadata={
                "override_id": record.id,
                "action": action,
                "reason": record.reason,
                "previous_status": previous.status,
                "new_status": current.status,
                "previous_caps": previous.caps,
                "new_caps": record.new_caps,
            },
            ip_address=ip_address,
        )
        return record, current

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_history(self, project_id: UUID, limit: int = 50) -> List[ManualOverride]:
        result = await self.db.execute(
            select(ManualOverride)
            .where(ManualOverride.project_id == project_id)
            .order_by(ManualOverride.performed_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_id(self, override_id: UUID) -> ManualOverride:
        record = await self.db.get(ManualOverride, override_id)
        if record is None:
            raise NotFoundError("ManualOverride", override_id)
        return record

    async def get_all(self, limit: int = 100, offset: int = 0) -> List[ManualOverride]:
        result = await self.db.execute(
            select(ManualOverride)
            .order_by(ManualOverride.performed_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_statistics(self, days: int = 7) -> OverrideStatistics:
        result = await self.db.execute(
            select(ManualOverride.action, func.count(ManualOverride.id)).group_by(ManualOverride.action)
        )
        by_action: Dict[str, int] = {action.value: 0 for action in OverrideAction}
        for action, count in result.all():
            by_action[action.value] = count

        since = self.clock() - timedelta(days=days)
        recent = await self.db.execute(
            select(func.count(ManualOverride.id)).where(ManualOverride.performed_at >= since)
        )
        return OverrideStatistics(
            total=sum(by_action.values()),
            by_action=by_action,
            recent_count=int(recent.scalar_one()),
        )
