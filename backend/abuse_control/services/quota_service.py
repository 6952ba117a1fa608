"""
Quota Ledger
Per-project hard caps and usage accounting
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, and_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..models.database import CapType, Project, ProjectQuota, ProjectStatus, Suspension, UsageMetric
from ..schemas.quota import QuotaCheckResult, QuotaInfo, QuotaUsage
from .errors import NotFoundError, ProjectSuspendedError, QuotaExceededError, ValidationError
from .thresholds import (
    CAP_MEASUREMENT_WINDOW_MS, CAP_VALUE_MAX, CAP_VALUE_MIN, DEFAULT_HARD_CAPS, GAUGE_CAPS, parse_cap_type,
)

logger = logging.getLogger(__name__)


def evaluate_quota(limit: int, current_usage: int) -> QuotaCheckResult:
    """Pure comparison of usage with a cap"""
    return QuotaCheckResult(
        allowed=current_usage <= limit,
        remaining=max(0, limit - current_usage),
        limit=limit,
        current_usage=current_usage,
    )


class QuotaManager:
    """
    Reads and writes per-project caps and records usage.
    Missing cap rows always read as the per-type default.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    # =========================================================================
    # CAPS
    # =========================================================================

    async def initialize_project(self, project_id: UUID) -> List[QuotaInfo]:
        """Apply default caps for a newly provisioned project"""
        await self.apply_defaults(project_id)
        return await self.get_quotas(project_id)

    async def apply_defaults(self, project_id: UUID) -> int:
        """Insert default caps only for cap types without a row. Returns rows added."""
        result = await self.db.execute(
            select(ProjectQuota.cap_type).where(ProjectQuota.project_id == project_id)
        )
        present = set(result.scalars().all())

        added = 0
        for cap_type, default in DEFAULT_HARD_CAPS.items():
            if cap_type in present:
                continue
            self.db.add(ProjectQuota(project_id=project_id, cap_type=cap_type, cap_value=default))
            added += 1

        if added:
            await self.db.flush()
        return added

    async def get_quotas(self, project_id: UUID) -> List[QuotaInfo]:
        """All caps for a project; never fails, falls back to defaults"""
        try:
            result = await self.db.execute(
                select(ProjectQuota).where(ProjectQuota.project_id == project_id)
            )
            rows = {q.cap_type: q.cap_value for q in result.scalars().all()}
        except SQLAlchemyError:
            logger.exception(f"Failed to read quotas for project {project_id}; using defaults")
            rows = {}

        return [
            QuotaInfo(
                cap_type=cap_type,
                cap_value=rows.get(cap_type, default),
                is_default=cap_type not in rows,
            )
            for cap_type, default in DEFAULT_HARD_CAPS.items()
        ]

    async def get_quota_map(self, project_id: UUID) -> Dict[str, int]:
        """{cap_type value: cap} for snapshots and JSON columns"""
        return {q.cap_type.value: q.cap_value for q in await self.get_quotas(project_id)}

    async def get_quota(self, project_id: UUID, cap_type: CapType) -> int:
        result = await self.db.execute(
            select(ProjectQuota.cap_value).where(
                and_(ProjectQuota.project_id == project_id, ProjectQuota.cap_type == cap_type)
            )
        )
        value = result.scalar_one_or_none()
        return DEFAULT_HARD_CAPS[cap_type] if value is None else value

    async def update_quota(self, project_id: UUID, cap_type, value: int) -> ProjectQuota:
        """Set one cap. Raises ValidationError when the value is out of range."""
        parsed = parse_cap_type(cap_type)
        if parsed is None:
            raise ValidationError(f"Invalid cap type: {cap_type}")

        if not isinstance(value, int) or isinstance(value, bool) or not CAP_VALUE_MIN <= value <= CAP_VALUE_MAX:
            raise ValidationError(
                f"Invalid value for {parsed.value}: must be between {CAP_VALUE_MIN} and {CAP_VALUE_MAX:,}"
            )

        result = await self.db.execute(
            select(ProjectQuota).where(
                and_(ProjectQuota.project_id == project_id, ProjectQuota.cap_type == parsed)
            )
        )
        quota = result.scalar_one_or_none()
        if quota is None:
            quota = ProjectQuota(project_id=project_id, cap_type=parsed, cap_value=value)
            self.db.add(quota)
        else:
            quota.cap_value = value
            quota.updated_at = self.clock()

        await self.db.flush()
        return quota

    async def reset_quotas(self, project_id: UUID) -> List[QuotaInfo]:
        """Caps are never deleted; resetting writes the defaults back"""
        for cap_type, default in DEFAULT_HARD_CAPS.items():
            await self.update_quota(project_id, cap_type, default)
        return await self.get_quotas(project_id)

    # =========================================================================
    # USAGE
    # =========================================================================

    async def record(self, project_id: UUID, cap_type: CapType, amount: int = 1) -> UsageMetric:
        """Append a usage sample. Accounting is advisory; duplicates are tolerated."""
        metric = UsageMetric(
            project_id=project_id,
            metric_type=cap_type,
            metric_value=amount,
            recorded_at=self.clock(),
        )
        self.db.add(metric)
        await self.db.flush()
        return metric

    async def get_current_usage(self, project_id: UUID, cap_type: CapType) -> int:
        """Usage inside the cap's measurement window"""
        since = self.clock() - timedelta(milliseconds=CAP_MEASUREMENT_WINDOW_MS[cap_type])
        conditions = and_(
            UsageMetric.project_id == project_id,
            UsageMetric.metric_type == cap_type,
            UsageMetric.recorded_at >= since,
        )

        if cap_type in GAUGE_CAPS:
            result = await self.db.execute(
                select(UsageMetric.metric_value)
                .where(conditions)
                .order_by(UsageMetric.recorded_at.desc())
                .limit(1)
            )
            return int(result.scalar_one_or_none() or 0)

        result = await self.db.execute(
            select(func.coalesce(func.sum(UsageMetric.metric_value), 0)).where(conditions)
        )
        return int(result.scalar_one())

    # =========================================================================
    # CHECKS
    # =========================================================================

    async def check_quota(self, project_id: UUID, cap_type: CapType, current_usage: int) -> QuotaCheckResult:
        limit = await self.get_quota(project_id, cap_type)
        return evaluate_quota(limit, current_usage)

    async def is_allowed(self, project_id: UUID, cap_type: CapType) -> bool:
        """
        Whether the project may perform one more operation of this cap type.
        Fails open on storage errors so an unrelated outage never denies service.
        """
        try:
            usage = await self.get_current_usage(project_id, cap_type)
            check = await self.check_quota(project_id, cap_type, usage)
            return check.allowed
        except SQLAlchemyError:
            logger.exception(
                f"Quota check failed for project {project_id} ({cap_type.value}); allowing operation"
            )
            return True

    async def enforce(self, project_id: UUID, cap_type: CapType) -> QuotaCheckResult:
        """
        Gate for calling services: raises ProjectSuspendedError for suspended
        projects and QuotaExceededError when usage is over the cap.
        """
        project = await self.db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)

        if project.status == ProjectStatus.SUSPENDED:
            result = await self.db.execute(
                select(Suspension.reason).where(
                    and_(Suspension.project_id == project_id, Suspension.resolved_at.is_(None))
                )
            )
            raise ProjectSuspendedError(
                project_id,
                reason=result.scalar_one_or_none(),
                support_email=self.settings.SUPPORT_EMAIL,
                support_url=self.settings.SUPPORT_URL,
            )

        usage = await self.get_current_usage(project_id, cap_type)
        check = await self.check_quota(project_id, cap_type, usage)
        if not check.allowed:
            raise QuotaExceededError(project_id, cap_type.value, usage, check.limit)
        return check

    async def get_usage_summary(self, project_id: UUID) -> List[QuotaUsage]:
        """Usage against every cap with the highest warning threshold crossed"""
        thresholds = self.settings.quota_warning_thresholds_list
        summary = []
        for quota in await self.get_quotas(project_id):
            usage = await self.get_current_usage(project_id, quota.cap_type)
            percentage = round(usage / quota.cap_value * 100, 2) if quota.cap_value > 0 else (
                100.0 if usage > 0 else 0.0
            )
            crossed = [level for level in thresholds if percentage >= level]
            summary.append(
                QuotaUsage(
                    cap_type=quota.cap_type,
                    current_usage=usage,
                    limit=quota.cap_value,
                    percentage=percentage,
                    warning_level=crossed[-1] if crossed else None,
                    exceeded=usage > quota.cap_value,
                )
            )
        return summary
