"""
Notification Dispatcher
Queues suspension/detection notifications per recipient preference and
drains the queue with bounded, backed-off retries.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, and_, or_, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..models.database import (
    Notification, NotificationChannel, NotificationPreference, NotificationPriority,
    NotificationStatus, NotificationType, Project, Suspension,
)
from ..schemas.notification import EffectivePreference, NotificationPreferenceInput
from . import notification_templates as templates
from .delivery import DeliveryTransport, build_default_transports, calculate_backoff_ms, is_permanent_error
from .errors import DeliveryError

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = [NotificationChannel.EMAIL]


# ============================================================================
# PREFERENCES
# ============================================================================

class NotificationPreferenceService:
    """
    Per-user preferences. A row with project_id NULL applies to every
    project of the user; a project-specific row overrides it.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_preferences(self, user_id: UUID, project_id: Optional[UUID] = None) -> List[NotificationPreference]:
        query = select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        if project_id is None:
            query = query.where(NotificationPreference.project_id.is_(None))
        else:
            query = query.where(NotificationPreference.project_id == project_id)
        result = await self.db.execute(query.order_by(NotificationPreference.notification_type))
        return list(result.scalars().all())

    async def get_effective_preference(
        self,
        user_id: UUID,
        project_id: Optional[UUID],
        notification_type: NotificationType,
    ) -> EffectivePreference:
        result = await self.db.execute(
            select(NotificationPreference).where(
                and_(
                    NotificationPreference.user_id == user_id,
                    NotificationPreference.notification_type == notification_type,
                    or_(
                        NotificationPreference.project_id == project_id,
                        NotificationPreference.project_id.is_(None),
                    ),
                )
            )
        )
        rows = list(result.scalars().all())

        specific = next((r for r in rows if project_id is not None and r.project_id == project_id), None)
        general = next((r for r in rows if r.project_id is None), None)
        chosen, source = (specific, "project") if specific else (general, "global")

        if chosen is None:
            return EffectivePreference(
                notification_type=notification_type,
                enabled=True,
                channels=list(DEFAULT_CHANNELS),
                source="default",
            )
        return EffectivePreference(
            notification_type=notification_type,
            enabled=chosen.enabled,
            channels=[NotificationChannel(c) for c in (chosen.channels or [])],
            source=source,
        )

    async def upsert_preference(
        self,
        user_id: UUID,
        preference: NotificationPreferenceInput,
        project_id: Optional[UUID] = None,
    ) -> NotificationPreference:
        # NULL project_id never conflicts in a unique index, so match explicitly
        condition = (
            NotificationPreference.project_id.is_(None)
            if project_id is None
            else NotificationPreference.project_id == project_id
        )
        result = await self.db.execute(
            select(NotificationPreference).where(
                and_(
                    NotificationPreference.user_id == user_id,
                    NotificationPreference.notification_type == preference.notification_type,
                    condition,
                )
            )
        )
        row = result.scalar_one_or_none()
        channels = [c.value for c in preference.channels]

        if row is None:
            row = NotificationPreference(
                user_id=user_id,
                project_id=project_id,
                notification_type=preference.notification_type,
                enabled=preference.enabled,
                channels=channels,
            )
            self.db.add(row)
        else:
            row.enabled = preference.enabled
            row.channels = channels
            row.updated_at = datetime.utcnow()

        await self.db.flush()
        return row

    async def delete_preference(
        self,
        user_id: UUID,
        notification_type: NotificationType,
        project_id: Optional[UUID] = None,
    ) -> bool:
        condition = (
            NotificationPreference.project_id.is_(None)
            if project_id is None
            else NotificationPreference.project_id == project_id
        )
        result = await self.db.execute(
            delete(NotificationPreference).where(
                and_(
                    NotificationPreference.user_id == user_id,
                    NotificationPreference.notification_type == notification_type,
                    condition,
                )
            )
        )
        return result.rowcount > 0

    @staticmethod
    def get_default_preferences() -> List[NotificationPreferenceInput]:
        return [
            NotificationPreferenceInput(notification_type=t, enabled=True, channels=list(DEFAULT_CHANNELS))
            for t in NotificationType
        ]

    async def apply_default_preferences(self, user_id: UUID) -> List[NotificationPreference]:
        """Insert global defaults for types the user has not configured"""
        existing = {p.notification_type for p in await self.get_preferences(user_id)}
        created = []
        for preference in self.get_default_preferences():
            if preference.notification_type not in existing:
                created.append(await self.upsert_preference(user_id, preference))
        return created


# ============================================================================
# DISPATCHER
# ============================================================================

class NotificationDispatcher:
    """
    Writes notifications to the queue table and delivers them.
    Enqueueing happens inside the caller's transaction; delivery happens
    later from the queue worker, so a failed send never affects the state
    change that produced it.
    """

    def __init__(
        self,
        db: AsyncSession,
        transports: Optional[Dict[NotificationChannel, DeliveryTransport]] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        rng: Callable[[], float] = random.random,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self._transports = transports
        self.preferences = NotificationPreferenceService(db)
        self.clock = clock
        self.rng = rng

    @property
    def transports(self) -> Dict[NotificationChannel, DeliveryTransport]:
        if self._transports is None:
            self._transports = build_default_transports(self.settings)
        return self._transports

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    async def enqueue(
        self,
        project: Project,
        notification_type: NotificationType,
        subject: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        data: Optional[dict] = None,
    ) -> List[Notification]:
        """Queue a notification for the project owner, honouring preferences"""
        if project.owner_id is None and not project.owner_email:
            logger.info(f"Project {project.id} has no owner to notify for {notification_type.value}")
            return []

        channels = list(DEFAULT_CHANNELS)
        if project.owner_id is not None:
            preference = await self.preferences.get_effective_preference(
                project.owner_id, project.id, notification_type
            )
            if not preference.enabled or not preference.channels:
                logger.debug(f"{notification_type.value} disabled for user {project.owner_id}")
                return []
            channels = preference.channels

        notification = Notification(
            project_id=project.id,
            recipient_id=project.owner_id,
            recipient_email=project.owner_email,
            notification_type=notification_type,
            priority=priority,
            subject=subject,
            body=body,
            data=data or {},
            channels=[c.value for c in channels],
            delivered_channels=[],
            status=NotificationStatus.PENDING,
            attempts=0,
            next_attempt_at=self.clock(),
            created_at=self.clock(),
        )
        self.db.add(notification)
        await self.db.flush()
        return [notification]

    async def notify_project_suspended(self, project: Project, suspension: Suspension) -> List[Notification]:
        subject, body = templates.project_suspended(project, suspension, self.settings)
        return await self.enqueue(
            project,
            NotificationType.PROJECT_SUSPENDED,
            subject,
            body,
            priority=NotificationPriority.CRITICAL,
            data={"suspension_id": str(suspension.id), "reason": suspension.reason},
        )

    async def notify_project_unsuspended(self, project: Project, notes: Optional[str] = None) -> List[Notification]:
        subject, body = templates.project_unsuspended(project, notes, self.settings)
        return await self.enqueue(
            project,
            NotificationType.PROJECT_UNSUSPENDED,
            subject,
            body,
            priority=NotificationPriority.MEDIUM,
        )

    async def notify_quota_warning(
        self, project: Project, cap_type: str, usage: int, limit: int, level: int
    ) -> List[Notification]:
        subject, body = templates.quota_warning(project, cap_type, usage, limit, level, self.settings)
        return await self.enqueue(
            project,
            NotificationType.QUOTA_WARNING,
            subject,
            body,
            priority=NotificationPriority.HIGH if level >= 90 else NotificationPriority.MEDIUM,
            data={"cap_type": cap_type, "usage": usage, "limit": limit, "level": level},
        )

    async def notify_detection(
        self,
        project: Project,
        notification_type: NotificationType,
        title: str,
        description: str,
        severity: str,
        action: str,
        data: Optional[dict] = None,
    ) -> List[Notification]:
        subject, body = templates.detection_alert(project, title, description, severity, action, self.settings)
        priority = NotificationPriority.CRITICAL if severity == "severe" else NotificationPriority.HIGH
        return await self.enqueue(project, notification_type, subject, body, priority=priority, data=data)

    # =========================================================================
    # DELIVERY
    # =========================================================================

    async def deliver(self, notification: Notification) -> NotificationStatus:
        """Attempt every channel not yet delivered and update the queue row"""
        delivered = list(notification.delivered_channels or [])
        errors = []
        permanent = False

        for channel_name in notification.channels or []:
            if channel_name in delivered:
                continue
            try:
                await self._send(notification, channel_name)
                delivered.append(channel_name)
                notification.delivered_channels = list(delivered)
            except DeliveryError as e:
                logger.warning(f"Delivery of notification {notification.id} via {channel_name} failed: {e}")
                errors.append(f"{channel_name}: {e}")
                permanent = permanent or e.permanent

        return await self._record_attempt(notification, errors, permanent)

    async def _record_attempt(
        self, notification: Notification, errors: List[str], permanent: bool = False
    ) -> NotificationStatus:
        """Count one attempt and move the row to delivered, retrying or failed"""
        now = self.clock()
        notification.attempts = (notification.attempts or 0) + 1

        if not errors:
            notification.status = NotificationStatus.DELIVERED
            notification.delivered_at = now
            notification.error_message = None
        elif permanent or notification.attempts >= self.settings.NOTIFICATION_MAX_ATTEMPTS:
            notification.status = NotificationStatus.FAILED
            notification.error_message = "; ".join(errors)
        else:
            notification.status = NotificationStatus.RETRYING
            notification.error_message = "; ".join(errors)
            delay_ms = calculate_backoff_ms(
                notification.attempts,
                self.settings.NOTIFICATION_RETRY_BASE_DELAY_MS,
                self.settings.NOTIFICATION_RETRY_MAX_DELAY_MS,
                self.rng,
            )
            notification.next_attempt_at = now + timedelta(milliseconds=delay_ms)

        await self.db.flush()
        return notification.status

    async def _send(self, notification: Notification, channel_name: str):
        try:
            channel = NotificationChannel(channel_name)
        except ValueError:
            raise DeliveryError(f"Unknown channel: {channel_name}", channel_name, permanent=True)

        transport = self.transports.get(channel)
        if transport is None:
            raise DeliveryError(f"{channel.value} delivery not implemented", channel.value, permanent=True)

        recipient = notification.recipient_email or str(notification.recipient_id or "")
        result = await transport.send(recipient, notification.subject, notification.body)
        if not result.success:
            raise DeliveryError(
                result.error or "Delivery failed",
                channel.value,
                permanent=is_permanent_error(result.error),
            )

    async def process_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Deliver due notifications; one failing row never stops the batch"""
        limit = limit or self.settings.NOTIFICATION_BATCH_SIZE
        result = await self.db.execute(
            select(Notification)
            .where(
                and_(
                    Notification.status.in_([NotificationStatus.PENDING, NotificationStatus.RETRYING]),
                    Notification.next_attempt_at <= self.clock(),
                )
            )
            .order_by(Notification.created_at.asc())
            .limit(limit)
        )
        due = list(result.scalars().all())

        counts = {"processed": 0, "delivered": 0, "retrying": 0, "failed": 0}
        for notification in due:
            try:
                status = await self.deliver(notification)
            except Exception as e:
                # Still counts as an attempt so the row cannot be re-sent forever
                logger.exception(f"Unexpected error delivering notification {notification.id}")
                status = await self._record_attempt(notification, [f"unexpected error: {e}"])
            counts["processed"] += 1
            counts[status.value] += 1
        return counts

    async def get_notifications(self, project_id: UUID, limit: int = 50) -> List[Notification]:
        result = await self.db.execute(
            select(Notification)
            .where(Notification.project_id == project_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
