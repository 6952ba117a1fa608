"""
Detection Tasks
Scheduled entry points for the detection and enforcement jobs
"""

import asyncio
from typing import Dict

from celery.utils.log import get_task_logger

from abuse_control.workers.celery_app import celery_app
from abuse_control.services import job_runner
from abuse_control.utils.cache import build_cache, close_redis
from abuse_control.utils.database import worker_session_maker

logger = get_task_logger(__name__)


def run_async(coro):
    """Run async function in sync context"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _run_job(job) -> Dict:
    try:
        async with worker_session_maker() as session_maker:
            result = await job(session_maker, cache=build_cache())
        return result.model_dump(mode="json")
    finally:
        await close_redis()


def _execute(name: str, job) -> Dict:
    try:
        result = run_async(_run_job(job))
        if result.get("skipped"):
            logger.info(f"{name} skipped: previous run still active")
        return result
    except Exception as e:
        logger.exception(f"Error running {name}: {e}")
        return {"job_type": name, "success": False, "error": str(e)}


@celery_app.task(
    name="abuse_control.workers.tasks.detection_tasks.spike_detection",
)
def spike_detection() -> Dict:
    """Hourly usage spike sweep over active projects"""
    return _execute("spike_detection", job_runner.run_spike_detection)


@celery_app.task(
    name="abuse_control.workers.tasks.detection_tasks.error_rate_detection",
)
def error_rate_detection() -> Dict:
    return _execute("error_rate_detection", job_runner.run_error_rate_detection)


@celery_app.task(
    name="abuse_control.workers.tasks.detection_tasks.pattern_detection",
)
def pattern_detection() -> Dict:
    return _execute("pattern_detection", job_runner.run_pattern_detection)


@celery_app.task(
    name="abuse_control.workers.tasks.detection_tasks.suspension_check",
)
def suspension_check() -> Dict:
    """
    Hard cap sweep.
    Suspends production projects over a cap and queues threshold warnings.
    """
    return _execute("suspension_check", job_runner.run_suspension_check)


@celery_app.task(
    name="abuse_control.workers.tasks.detection_tasks.cleanup_old_records",
)
def cleanup_old_records() -> Dict:
    """Daily retention pruning of metric and activity rows"""

    async def _cleanup():
        async with worker_session_maker() as session_maker:
            return await job_runner.cleanup_old_records(session_maker)

    try:
        deleted = run_async(_cleanup())
        return {"success": True, "deleted": deleted}
    except Exception as e:
        logger.exception(f"Error cleaning up old records: {e}")
        return {"success": False, "error": str(e)}
