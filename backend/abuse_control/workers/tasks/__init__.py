"""
Celery Tasks
"""

from .detection_tasks import (
    spike_detection,
    error_rate_detection,
    pattern_detection,
    suspension_check,
    cleanup_old_records,
)
from .notification_tasks import process_notification_queue

__all__ = [
    "spike_detection",
    "error_rate_detection",
    "pattern_detection",
    "suspension_check",
    "cleanup_old_records",
    "process_notification_queue",
]
