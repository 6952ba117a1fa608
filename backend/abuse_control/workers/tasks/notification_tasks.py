"""
Notification Tasks
Drains the notification queue
"""

from datetime import datetime
from typing import Dict

from celery.utils.log import get_task_logger

from abuse_control.workers.celery_app import celery_app
from abuse_control.services.job_runner import process_notification_queue as drain_queue
from abuse_control.utils.database import worker_session_maker
from abuse_control.workers.tasks.detection_tasks import run_async

logger = get_task_logger(__name__)


@celery_app.task(
    name="abuse_control.workers.tasks.notification_tasks.process_notification_queue",
)
def process_notification_queue() -> Dict:
    """
    Deliver due notifications.
    Rows that fail stay queued with a backoff; permanent failures are marked failed.
    """

    async def _drain():
        async with worker_session_maker() as session_maker:
            return await drain_queue(session_maker)

    try:
        counts = run_async(_drain())
        return {
            "success": True,
            **counts,
            "timestamp": datetime.utcnow().isoformat(),
        }
    except Exception as e:
        logger.exception(f"Error processing notification queue: {e}")
        return {"success": False, "error": str(e)}
