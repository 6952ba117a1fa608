"""
Background Job Orchestrators
One job per detector family. Each run evaluates every ACTIVE project through
a bounded worker pool, isolates per-project failures and aggregates a summary.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings, get_settings
from ..models.database import (
    ActivityEvent, DetectionAction, ErrorMetric, NotificationType, Project, ProjectStatus, UsageMetric,
)
from ..schemas.jobs import ActionsTaken, JobResult
from .audit_service import AuditService
from .error_rate_service import ErrorRateDetector
from .notification_service import NotificationDispatcher
from .pattern_service import PatternDetector, PatternSignalSource
from .quota_service import QuotaManager
from .spike_service import SpikeDetector
from .suspension_service import SuspensionManager

logger = logging.getLogger(__name__)

SPIKE_DETECTION_JOB = "spike_detection"
ERROR_RATE_DETECTION_JOB = "error_rate_detection"
PATTERN_DETECTION_JOB = "pattern_detection"
SUSPENSION_CHECK_JOB = "suspension_check"


@dataclass
class ProjectOutcome:
    """What one project's evaluation produced"""
    detections: List[Dict[str, Any]] = field(default_factory=list)
    warnings: int = 0
    suspensions: int = 0
    investigations: int = 0
    notifications: int = 0


@dataclass
class JobContext:
    """Per-project collaborators, all bound to the project's own session"""
    db: AsyncSession
    settings: Settings
    cache: Any
    clock: Callable[[], datetime]
    notifier: NotificationDispatcher
    audit: AuditService
    suspensions: SuspensionManager


ProjectEvaluator = Callable[[JobContext, Project], Awaitable[ProjectOutcome]]


class DetectionJobRunner:
    """
    Runs an evaluator over all ACTIVE projects.

    Concurrency is bounded by a semaphore and every project gets its own
    session and transaction. Overlapping runs of the same job type are
    prevented with a cache lock; a run that finds the lock held is skipped.
    """

    def __init__(
        self,
        job_type: str,
        evaluator: ProjectEvaluator,
        session_maker: async_sessionmaker,
        cache=None,
        settings: Optional[Settings] = None,
        concurrency: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.job_type = job_type
        self.evaluator = evaluator
        self.session_maker = session_maker
        self.cache = cache
        self.settings = settings or get_settings()
        self.concurrency = max(1, concurrency or self.settings.JOB_CONCURRENCY)
        self.clock = clock

    async def _active_project_ids(self) -> List[UUID]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Project.id).where(Project.status == ProjectStatus.ACTIVE).order_by(Project.created_at)
            )
            return list(result.scalars().all())

    async def _evaluate_project(self, project_id: UUID, semaphore: asyncio.Semaphore) -> ProjectOutcome:
        async with semaphore:
            async with self.session_maker() as db:
                try:
                    project = await db.get(Project, project_id)
                    if project is None or project.status != ProjectStatus.ACTIVE:
                        return ProjectOutcome()

                    audit = AuditService(db)
                    notifier = NotificationDispatcher(db, settings=self.settings, clock=self.clock)
                    context = JobContext(
                        db=db,
                        settings=self.settings,
                        cache=self.cache,
                        clock=self.clock,
                        notifier=notifier,
                        audit=audit,
                        suspensions=SuspensionManager(
                            db, notifier=notifier, audit=audit, settings=self.settings, clock=self.clock
                        ),
                    )
                    outcome = await self.evaluator(context, project)
                    await db.commit()
                    return outcome
                except Exception:
                    await db.rollback()
                    raise

    async def run(self) -> JobResult:
        started_at = self.clock()
        lock_token = None

        if self.cache is not None:
            lock_token = await self.cache.acquire_lock(f"job:{self.job_type}", self.settings.JOB_LOCK_TTL)
            if lock_token is None:
                logger.info(f"[{self.job_type}] previous run still in progress; skipping this tick")
                return self._result(started_at, success=True, skipped=True)

        try:
            project_ids = await self._active_project_ids()
            logger.info(f"[{self.job_type}] checking {len(project_ids)} active project(s)")

            semaphore = asyncio.Semaphore(self.concurrency)
            outcomes = await asyncio.gather(
                *(self._evaluate_project(pid, semaphore) for pid in project_ids),
                return_exceptions=True,
            )

            result = self._result(started_at, success=True)
            result.projects_checked = len(project_ids)
            for project_id, outcome in zip(project_ids, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        f"[{self.job_type}] project {project_id} failed: {outcome!r}",
                        exc_info=outcome,
                    )
                    result.projects_failed += 1
                    continue
                result.detections.extend(outcome.detections)
                result.actions_taken.warnings += outcome.warnings
                result.actions_taken.suspensions += outcome.suspensions
                result.actions_taken.investigations += outcome.investigations
                result.actions_taken.notifications += outcome.notifications

            for detection in result.detections:
                pattern_type = detection.get("pattern_type")
                if pattern_type:
                    result.patterns_by_type[pattern_type] = result.patterns_by_type.get(pattern_type, 0) + 1

            result.completed_at = self.clock()
            result.duration_ms = _elapsed_ms(started_at, result.completed_at)
            logger.info(
                f"[{self.job_type}] done in {result.duration_ms}ms: "
                f"{result.projects_checked} checked, {len(result.detections)} detection(s), "
                f"{result.actions_taken.suspensions} suspension(s), "
                f"{result.actions_taken.warnings} warning(s), {result.projects_failed} failed"
            )
            return result

        except Exception as e:
            logger.exception(f"[{self.job_type}] job failed")
            return self._result(started_at, success=False, error=str(e))
        finally:
            if lock_token is not None:
                await self.cache.release_lock(f"job:{self.job_type}", lock_token)

    def _result(self, started_at: datetime, success: bool, skipped: bool = False, error: Optional[str] = None) -> JobResult:
        completed_at = self.clock()
        return JobResult(
            job_type=self.job_type,
            success=success,
            skipped=skipped,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=_elapsed_ms(started_at, completed_at),
            actions_taken=ActionsTaken(),
            error=error,
        )


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


# ============================================================================
# PER-PROJECT EVALUATORS
# ============================================================================

async def evaluate_spikes(context: JobContext, project: Project) -> ProjectOutcome:
    detector = SpikeDetector(context.db, cache=context.cache, settings=context.settings, clock=context.clock)
    outcome = ProjectOutcome()

    for spike in await detector.check_project(project.id):
        if spike.action == DetectionAction.SUSPEND:
            suspension = await context.suspensions.suspend(
                project.id,
                detector.suspension_reason(spike),
                notes=f"Auto-suspended: {spike.severity.value} usage spike on {spike.cap_type.value}",
            )
            if suspension is not None:
                outcome.suspensions += 1
        elif spike.action == DetectionAction.WARNING:
            outcome.warnings += 1
            outcome.notifications += len(
                await context.notifier.notify_detection(
                    project,
                    NotificationType.USAGE_SPIKE_DETECTED,
                    "Usage spike detected",
                    spike.details,
                    spike.severity.value,
                    spike.action.value,
                    data={"cap_type": spike.cap_type.value, "multiplier": spike.multiplier},
                )
            )

        await detector.record_detection(spike)
        outcome.detections.append(spike.model_dump(mode="json"))
    return outcome


async def evaluate_error_rate(context: JobContext, project: Project) -> ProjectOutcome:
    detector = ErrorRateDetector(context.db, cache=context.cache, settings=context.settings, clock=context.clock)
    outcome = ProjectOutcome()

    result = await detector.check_project(project.id)
    if result is None:
        return outcome

    if result.action == DetectionAction.INVESTIGATE:
        outcome.investigations += 1
        await context.audit.log_event(
            actor_id=None,
            action="error_rate_investigation",
            target_type="project",
            target_id=project.id,
            metadata=result.model_dump(mode="json"),
        )
    elif result.action == DetectionAction.WARNING:
        outcome.warnings += 1

    if result.action != DetectionAction.NONE:
        outcome.notifications += len(
            await context.notifier.notify_detection(
                project,
                NotificationType.ERROR_RATE_DETECTED,
                "High error rate detected",
                result.details,
                result.severity.value,
                result.action.value,
                data={"error_rate": result.error_rate, "total_requests": result.total_requests},
            )
        )

    await detector.record_detection(result)
    outcome.detections.append(result.model_dump(mode="json"))
    return outcome


def make_pattern_evaluator(sources: Optional[Dict[Any, PatternSignalSource]] = None) -> ProjectEvaluator:
    async def evaluate_patterns(context: JobContext, project: Project) -> ProjectOutcome:
        detector = PatternDetector(
            context.db, sources=sources, cache=context.cache, settings=context.settings, clock=context.clock
        )
        outcome = ProjectOutcome()

        for detection in await detector.check_project(project.id):
            if detection.action == DetectionAction.SUSPEND:
                suspension = await context.suspensions.suspend(
                    project.id,
                    detector.suspension_reason(detection),
                    notes=(
                        f"Auto-suspended for {detection.pattern_type.value}: "
                        f"{detection.severity.value} severity pattern detected"
                    ),
                )
                if suspension is not None:
                    outcome.suspensions += 1
            elif detection.action == DetectionAction.WARNING:
                outcome.warnings += 1
                outcome.notifications += len(
                    await context.notifier.notify_detection(
                        project,
                        NotificationType.MALICIOUS_PATTERN_DETECTED,
                        "Suspicious activity detected",
                        detection.description,
                        detection.severity.value,
                        detection.action.value,
                        data={"pattern_type": detection.pattern_type.value},
                    )
                )

            await detector.record_detection(detection)
            outcome.detections.append(detection.model_dump(mode="json"))
        return outcome

    return evaluate_patterns


async def evaluate_cap_violations(context: JobContext, project: Project) -> ProjectOutcome:
    """
    Suspend on the first exceeded cap; otherwise queue one quota warning per
    cap and threshold level per day.
    """
    outcome = ProjectOutcome()
    if project.environment not in context.settings.auto_suspend_environments_list:
        return outcome

    quotas = QuotaManager(context.db, settings=context.settings, clock=context.clock)
    for usage in await quotas.get_usage_summary(project.id):
        if usage.exceeded:
            suspension = await context.suspensions.suspend_for_cap_violation(
                project.id, usage.cap_type, usage.current_usage, usage.limit
            )
            outcome.detections.append(usage.model_dump(mode="json"))
            if suspension is not None:
                outcome.suspensions += 1
            return outcome

        if usage.warning_level is None:
            continue

        if context.cache is not None:
            day = context.clock().strftime("%Y-%m-%d")
            dedupe_key = f"quota_warning:{project.id}:{usage.cap_type.value}:{usage.warning_level}:{day}"
            if not await context.cache.add(dedupe_key, 1, ttl=86400):
                continue

        outcome.warnings += 1
        outcome.detections.append(usage.model_dump(mode="json"))
        outcome.notifications += len(
            await context.notifier.notify_quota_warning(
                project, usage.cap_type.value, usage.current_usage, usage.limit, usage.warning_level
            )
        )
    return outcome


# ============================================================================
# ENTRY POINTS
# ============================================================================

def _runner(job_type, evaluator, session_maker, cache, settings, concurrency, clock) -> DetectionJobRunner:
    return DetectionJobRunner(
        job_type,
        evaluator,
        session_maker,
        cache=cache,
        settings=settings,
        concurrency=concurrency,
        clock=clock,
    )


async def run_spike_detection(
    session_maker: async_sessionmaker,
    cache=None,
    settings: Optional[Settings] = None,
    concurrency: Optional[int] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> JobResult:
    return await _runner(
        SPIKE_DETECTION_JOB, evaluate_spikes, session_maker, cache, settings, concurrency, clock
    ).run()


async def run_error_rate_detection(
    session_maker: async_sessionmaker,
    cache=None,
    settings: Optional[Settings] = None,
    concurrency: Optional[int] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> JobResult:
    return await _runner(
        ERROR_RATE_DETECTION_JOB, evaluate_error_rate, session_maker, cache, settings, concurrency, clock
    ).run()


async def run_pattern_detection(
    session_maker: async_sessionmaker,
    cache=None,
    settings: Optional[Settings] = None,
    concurrency: Optional[int] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
    sources: Optional[Dict[Any, PatternSignalSource]] = None,
) -> JobResult:
    return await _runner(
        PATTERN_DETECTION_JOB, make_pattern_evaluator(sources), session_maker, cache, settings, concurrency, clock
    ).run()


async def run_suspension_check(
    session_maker: async_sessionmaker,
    cache=None,
    settings: Optional[Settings] = None,
    concurrency: Optional[int] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> JobResult:
    return await _runner(
        SUSPENSION_CHECK_JOB, evaluate_cap_violations, session_maker, cache, settings, concurrency, clock
    ).run()


# ============================================================================
# MAINTENANCE
# ============================================================================

async def process_notification_queue(
    session_maker: async_sessionmaker,
    transports=None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> Dict[str, int]:
    async with session_maker() as db:
        dispatcher = NotificationDispatcher(db, transports=transports, settings=settings, clock=clock)
        counts = await dispatcher.process_pending()
        await db.commit()
    if counts["processed"]:
        logger.info(f"Notification queue: {counts}")
    return counts


async def cleanup_old_records(
    session_maker: async_sessionmaker,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> Dict[str, int]:
    """Prune time-series rows older than the retention period"""
    settings = settings or get_settings()
    cutoff = clock() - timedelta(days=settings.METRIC_RETENTION_DAYS)
    deleted = {}
    async with session_maker() as db:
        for model in (UsageMetric, ErrorMetric, ActivityEvent):
            result = await db.execute(delete(model).where(model.recorded_at < cutoff))
            deleted[model.__tablename__] = result.rowcount or 0
        await db.commit()
    logger.info(f"Retention cleanup removed {deleted}")
    return deleted
