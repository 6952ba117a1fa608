"""
Notification Schemas
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.database import NotificationChannel, NotificationType


class DeliveryResult(BaseModel):
    """What a delivery transport reports back"""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationPreferenceInput(BaseModel):
    """Preference update for one notification type"""
    notification_type: NotificationType
    enabled: bool = True
    channels: List[NotificationChannel] = Field(default_factory=lambda: [NotificationChannel.EMAIL])


class EffectivePreference(BaseModel):
    """Preference after project → global → default resolution"""
    notification_type: NotificationType
    enabled: bool
    channels: List[NotificationChannel]
    source: str  # project, global, default
