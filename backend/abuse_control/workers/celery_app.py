"""
Celery Application Configuration
Periodic detection, enforcement and notification delivery
"""

from celery import Celery
from kombu import Queue, Exchange

from abuse_control.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "abuse_control",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "abuse_control.workers.tasks.detection_tasks",
        "abuse_control.workers.tasks.notification_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Result backend settings
    result_expires=86400,  # 24 hours

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=settings.JOB_LOCK_TTL,
    task_soft_time_limit=settings.JOB_LOCK_TTL - 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Queue configuration
    task_queues=(
        Queue("detection", Exchange("detection"), routing_key="detect"),
        Queue("notifications", Exchange("notifications"), routing_key="notify"),
        Queue("default", Exchange("default"), routing_key="default"),
    ),

    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_routes={
        "abuse_control.workers.tasks.detection_tasks.*": {"queue": "detection"},
        "abuse_control.workers.tasks.notification_tasks.*": {"queue": "notifications"},
    },

    # Beat scheduler for periodic tasks
    beat_schedule={
        "spike-detection": {
            "task": "abuse_control.workers.tasks.detection_tasks.spike_detection",
            "schedule": float(settings.SPIKE_DETECTION_INTERVAL),
        },
        "error-rate-detection": {
            "task": "abuse_control.workers.tasks.detection_tasks.error_rate_detection",
            "schedule": float(settings.ERROR_RATE_DETECTION_INTERVAL),
        },
        "pattern-detection": {
            "task": "abuse_control.workers.tasks.detection_tasks.pattern_detection",
            "schedule": float(settings.PATTERN_DETECTION_INTERVAL),
        },
        "suspension-check": {
            "task": "abuse_control.workers.tasks.detection_tasks.suspension_check",
            "schedule": float(settings.SUSPENSION_CHECK_INTERVAL),
        },
        "process-notification-queue": {
            "task": "abuse_control.workers.tasks.notification_tasks.process_notification_queue",
            "schedule": float(settings.NOTIFICATION_QUEUE_INTERVAL),
        },
        "cleanup-old-records": {
            "task": "abuse_control.workers.tasks.detection_tasks.cleanup_old_records",
            "schedule": float(settings.RETENTION_CLEANUP_INTERVAL),
        },
    },
)
