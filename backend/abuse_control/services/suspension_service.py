"""
Suspension State Machine
The only code path that moves a project between ACTIVE and SUSPENDED
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Union
from uuid import UUID

from sqlalchemy import select, update, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..models.database import (
    CapType, Project, ProjectStatus, Suspension, SuspensionHistory, SuspensionType,
)
from ..schemas.quota import SuspensionReason
from .audit_service import AuditService
from .errors import NotFoundError, ProjectSuspendedError, StorageError
from .notification_service import NotificationDispatcher
from .quota_service import QuotaManager

logger = logging.getLogger(__name__)


class SuspensionManager:
    """
    Suspend/unsuspend with conditional writes keyed on the current status.

    Two concurrent transitions on one project cannot both win: the UPDATE
    only matches while the project is still in the expected state, and the
    partial unique index on open suspensions backs that up. Neither method
    commits; the caller owns the transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[NotificationDispatcher] = None,
        audit: Optional[AuditService] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.notifier = notifier or NotificationDispatcher(db, settings=self.settings, clock=clock)
        self.audit = audit or AuditService(db)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def suspend(
        self,
        project_id: UUID,
        reason: Union[SuspensionReason, dict],
        notes: Optional[str] = None,
        suspension_type: SuspensionType = SuspensionType.AUTOMATIC,
        performed_by: Optional[str] = None,
    ) -> Optional[Suspension]:
        """
        ACTIVE -> SUSPENDED.
        Returns the new suspension record, or None if the project was
        already suspended (no duplicate record is created).
        """
        if isinstance(reason, dict):
            reason = SuspensionReason.model_validate(reason)
        now = self.clock()

        try:
            result = await self.db.execute(
                update(Project)
                .where(and_(Project.id == project_id, Project.status == ProjectStatus.ACTIVE))
                .values(status=ProjectStatus.SUSPENDED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            project = await self._load_project(project_id)

            if result.rowcount == 0:
                logger.info(f"Project {project_id} is already suspended; skipping")
                return None

            suspension = Suspension(
                project_id=project_id,
                reason=reason.model_dump(mode="json"),
                cap_exceeded=reason.cap_type,
                suspension_type=suspension_type,
                notes=notes,
                suspended_at=now,
            )
            self.db.add(suspension)
            await self.db.flush()

            self.db.add(
                SuspensionHistory(
                    project_id=project_id,
                    suspension_id=suspension.id,
                    action="suspended",
                    reason=suspension.reason,
                    notes=notes,
                    performed_by=performed_by,
                    occurred_at=now,
                )
            )
            await self.audit.log_event(
                actor_id=performed_by,
                action="project_suspended",
                target_type="project",
                target_id=project_id,
                metadata={
                    "suspension_id": suspension.id,
                    "suspension_type": suspension_type,
                    "reason": suspension.reason,
                },
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to suspend project {project_id}: {e}") from e

        logger.warning(
            f"Project {project_id} suspended ({suspension_type.value}): "
            f"{reason.cap_type.value} {reason.current_value} > {reason.limit_exceeded}"
        )
        await self._notify_best_effort(self.notifier.notify_project_suspended, project, suspension)
        return suspension

    async def unsuspend(
        self,
        project_id: UUID,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> Optional[Suspension]:
        """
        SUSPENDED -> ACTIVE. Detectors never call this; only operators do.
        Returns the resolved record, or None if the project was already
        active (no history is written).
        """
        now = self.clock()

        try:
            result = await self.db.execute(
                update(Project)
                .where(and_(Project.id == project_id, Project.status == ProjectStatus.SUSPENDED))
                .values(status=ProjectStatus.ACTIVE, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            project = await self._load_project(project_id)

            if result.rowcount == 0:
                logger.info(f"Project {project_id} is not suspended; nothing to unsuspend")
                return None

            open_records = await self._open_suspensions(project_id)
            for record in open_records:
                record.resolved_at = now
                if notes:
                    record.notes = f"{record.notes}\n{notes}" if record.notes else notes
            resolved = open_records[0] if open_records else None

            self.db.add(
                SuspensionHistory(
                    project_id=project_id,
                    suspension_id=resolved.id if resolved else None,
                    action="unsuspended",
                    notes=notes,
                    performed_by=performed_by,
                    occurred_at=now,
                )
            )
            await self.audit.log_event(
                actor_id=performed_by,
                action="project_unsuspended",
                target_type="project",
                target_id=project_id,
                metadata={"suspension_id": resolved.id if resolved else None, "notes": notes},
            )
            await self.db.flush()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to unsuspend project {project_id}: {e}") from e

        logger.info(f"Project {project_id} unsuspended by {performed_by or 'system'}")
        await self._notify_best_effort(self.notifier.notify_project_unsuspended, project, notes)
        return resolved

    async def suspend_for_cap_violation(
        self,
        project_id: UUID,
        cap_type: CapType,
        current_value: int,
        limit: int,
    ) -> Optional[Suspension]:
        reason = SuspensionReason(
            cap_type=cap_type,
            current_value=current_value,
            limit_exceeded=limit,
            details=f"Exceeded {cap_type.value} limit: {current_value} / {limit}",
        )
        return await self.suspend(
            project_id,
            reason,
            notes="Automatic suspension: hard cap exceeded",
            suspension_type=SuspensionType.AUTOMATIC,
        )

    async def check_all_projects_for_cap_violations(self) -> List[Suspension]:
        """
        Suspend every active project over one of its caps, limited to the
        environments listed in AUTO_SUSPEND_ENVIRONMENTS. Only the first
        exceeded cap of a project is acted on.
        """
        quotas = QuotaManager(self.db, settings=self.settings, clock=self.clock)
        result = await self.db.execute(
            select(Project.id).where(
                and_(
                    Project.status == ProjectStatus.ACTIVE,
                    Project.environment.in_(self.settings.auto_suspend_environments_list),
                )
            )
        )

        suspended = []
        for project_id in result.scalars().all():
            exceeded = next((u for u in await quotas.get_usage_summary(project_id) if u.exceeded), None)
            if exceeded is None:
                continue
            suspension = await self.suspend_for_cap_violation(
                project_id, exceeded.cap_type, exceeded.current_usage, exceeded.limit
            )
            if suspension is not None:
                suspended.append(suspension)

        logger.info(f"Cap violation sweep suspended {len(suspended)} project(s)")
        return suspended

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_status(self, project_id: UUID) -> Optional[Suspension]:
        """The unresolved suspension record, or None when the project is active"""
        records = await self._open_suspensions(project_id)
        return records[0] if records else None

    async def is_suspended(self, project_id: UUID) -> bool:
        return await self.get_status(project_id) is not None

    async def ensure_active(self, project_id: UUID) -> None:
        """Raise ProjectSuspendedError if the project is suspended"""
        suspension = await self.get_status(project_id)
        if suspension is not None:
            raise ProjectSuspendedError(
                project_id,
                reason=suspension.reason,
                support_email=self.settings.SUPPORT_EMAIL,
                support_url=self.settings.SUPPORT_URL,
            )

    async def get_all_active(self) -> List[Suspension]:
        """Every suspension currently in force"""
        result = await self.db.execute(
            select(Suspension)
            .where(Suspension.resolved_at.is_(None))
            .order_by(Suspension.suspended_at.desc())
        )
        return list(result.scalars().all())

    async def get_suspensions(self, project_id: UUID, limit: int = 50) -> List[Suspension]:
        result = await self.db.execute(
            select(Suspension)
            .where(Suspension.project_id == project_id)
            .order_by(Suspension.suspended_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_history(self, project_id: UUID, limit: int = 50) -> List[SuspensionHistory]:
        result = await self.db.execute(
            select(SuspensionHistory)
            .where(SuspensionHistory.project_id == project_id)
            .order_by(SuspensionHistory.occurred_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _load_project(self, project_id: UUID) -> Project:
        result = await self.db.execute(
            select(Project)
            .where(Project.id == project_id)
            .execution_options(populate_existing=True)
        )
        project = result.scalar_one_or_none()
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    async def _open_suspensions(self, project_id: UUID) -> List[Suspension]:
        result = await self.db.execute(
            select(Suspension)
            .where(and_(Suspension.project_id == project_id, Suspension.resolved_at.is_(None)))
            .order_by(Suspension.suspended_at.desc())
        )
        return list(result.scalars().all())

    async def _notify_best_effort(self, send, *args):
        """Queue a notification in a savepoint; failures are logged and dropped"""
        try:
            async with self.db.begin_nested():
                await send(*args)
        except Exception:
            logger.exception(f"Failed to queue notification via {send.__name__}")
