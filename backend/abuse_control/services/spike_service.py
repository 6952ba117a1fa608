"""
Usage Spike Detection
Compares current-window usage of each cap type with its baseline average
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..models.database import CapType, DetectionAction, SpikeDetection, SpikeDetectionConfig, UsageMetric
from ..schemas.detection import SpikeDetectionResult, SpikeDetectionSettings
from ..schemas.quota import SuspensionReason
from .detection_engine import SeverityActionMap, ThresholdDetector
from .errors import ValidationError
from .thresholds import SPIKE_ACTIONS, SPIKE_SEVERITY_TIERS, validate_spike_config

logger = logging.getLogger(__name__)


class SpikeDetector:
    """
    Spike detection per (project, cap type).

    average: usage per detection-window-sized bucket over the baseline period
             that ends where the detection window starts
    current: usage inside the detection window
    """

    def __init__(
        self,
        db: AsyncSession,
        cache=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.cache = cache
        self.settings = settings or get_settings()
        self.clock = clock

    # =========================================================================
    # CONFIG
    # =========================================================================

    def default_config(self) -> SpikeDetectionSettings:
        return SpikeDetectionSettings(
            threshold_multiplier=self.settings.SPIKE_THRESHOLD_MULTIPLIER,
            detection_window_ms=self.settings.SPIKE_DETECTION_WINDOW_MS,
            baseline_period_ms=self.settings.SPIKE_BASELINE_PERIOD_MS,
            min_usage=self.settings.SPIKE_MIN_USAGE,
        )

    async def get_config(self, project_id: UUID) -> SpikeDetectionSettings:
        """Defaults overlaid with the project's config row, if any"""
        cache_key = f"spike_config:{project_id}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return SpikeDetectionSettings.model_validate(cached)

        config = self.default_config()
        result = await self.db.execute(
            select(SpikeDetectionConfig).where(SpikeDetectionConfig.project_id == project_id)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            overrides = {
                "enabled": row.enabled,
                "threshold_multiplier": row.threshold_multiplier,
                "detection_window_ms": row.detection_window_ms,
                "baseline_period_ms": row.baseline_period_ms,
                "min_usage": row.min_usage,
                "suspension_action": row.suspension_action,
            }
            config = config.model_copy(update={k: v for k, v in overrides.items() if v is not None})

        if self.cache is not None:
            await self.cache.set(cache_key, config.model_dump())
        return config

    async def set_project_config(self, project_id: UUID, config: SpikeDetectionSettings) -> SpikeDetectionConfig:
        errors = validate_spike_config(config)
        if errors:
            raise ValidationError(errors)

        result = await self.db.execute(
            select(SpikeDetectionConfig).where(SpikeDetectionConfig.project_id == project_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = SpikeDetectionConfig(project_id=project_id)
            self.db.add(row)

        row.enabled = config.enabled
        row.threshold_multiplier = config.threshold_multiplier
        row.detection_window_ms = config.detection_window_ms
        row.baseline_period_ms = config.baseline_period_ms
        row.min_usage = config.min_usage
        row.suspension_action = config.suspension_action
        await self.db.flush()

        if self.cache is not None:
            await self.cache.delete(f"spike_config:{project_id}")
        return row

    # =========================================================================
    # MEASUREMENT
    # =========================================================================

    async def _sum_usage(
        self, project_id: UUID, cap_type: CapType, start: datetime, end: Optional[datetime] = None
    ) -> float:
        conditions = [
            UsageMetric.project_id == project_id,
            UsageMetric.metric_type == cap_type,
            UsageMetric.recorded_at >= start,
        ]
        if end is not None:
            conditions.append(UsageMetric.recorded_at < end)

        result = await self.db.execute(
            select(func.coalesce(func.sum(UsageMetric.metric_value), 0)).where(and_(*conditions))
        )
        return float(result.scalar_one())

    async def get_current_usage(self, project_id: UUID, cap_type: CapType, window_ms: int) -> float:
        since = self.clock() - timedelta(milliseconds=window_ms)
        return await self._sum_usage(project_id, cap_type, since)

    async def calculate_average_usage(
        self, project_id: UUID, cap_type: CapType, baseline_ms: int, window_ms: int
    ) -> float:
        window_start = self.clock() - timedelta(milliseconds=window_ms)
        baseline_start = window_start - timedelta(milliseconds=baseline_ms)
        total = await self._sum_usage(project_id, cap_type, baseline_start, window_start)
        buckets = max(baseline_ms / window_ms, 1.0)
        return total / buckets

    # =========================================================================
    # EVALUATION
    # =========================================================================

    @staticmethod
    def build_detector(config: SpikeDetectionSettings) -> ThresholdDetector:
        return ThresholdDetector(
            name="usage_spike",
            tiers=SPIKE_SEVERITY_TIERS,
            policy=SeverityActionMap(SPIKE_ACTIONS),
            threshold=config.threshold_multiplier,
            min_sample=config.min_usage,
        )

    def evaluate(
        self,
        project_id: UUID,
        cap_type: CapType,
        current_usage: float,
        average_usage: float,
        config: Optional[SpikeDetectionSettings] = None,
    ) -> SpikeDetectionResult:
        """Pure evaluation of one measurement"""
        config = config or self.default_config()
        multiplier = current_usage / average_usage if average_usage > 0 else 0.0
        evaluation = self.build_detector(config).evaluate(multiplier, sample=average_usage)

        action = evaluation.action
        if action == DetectionAction.SUSPEND and config.suspension_action != "suspend":
            action = DetectionAction.WARNING if config.suspension_action == "warning" else DetectionAction.NONE

        details = None
        if evaluation.detected:
            details = (
                f"Usage spike detected: {current_usage:g} "
                f"({multiplier:.2f}x average of {average_usage:.2f})"
            )

        return SpikeDetectionResult(
            project_id=project_id,
            cap_type=cap_type,
            current_usage=current_usage,
            average_usage=round(average_usage, 2),
            multiplier=round(multiplier, 2),
            threshold=config.threshold_multiplier,
            detection_window_ms=config.detection_window_ms,
            spike_detected=evaluation.detected,
            severity=evaluation.severity,
            action=action,
            details=details,
        )

    async def detect(
        self,
        project_id: UUID,
        cap_type: CapType,
        config: Optional[SpikeDetectionSettings] = None,
    ) -> SpikeDetectionResult:
        config = config or await self.get_config(project_id)
        current = await self.get_current_usage(project_id, cap_type, config.detection_window_ms)
        average = await self.calculate_average_usage(
            project_id, cap_type, config.baseline_period_ms, config.detection_window_ms
        )
        return self.evaluate(project_id, cap_type, current, average, config)

    async def check_project(self, project_id: UUID) -> List[SpikeDetectionResult]:
        """Detected spikes across every cap type; empty when detection is disabled"""
        config = await self.get_config(project_id)
        if not config.enabled:
            logger.debug(f"Spike detection disabled for project {project_id}")
            return []

        spikes = []
        for cap_type in CapType:
            result = await self.detect(project_id, cap_type, config)
            if result.spike_detected:
                logger.warning(
                    f"Spike detected for project {project_id}: {cap_type.value} is "
                    f"{result.multiplier}x average ({result.current_usage:g} vs "
                    f"{result.average_usage:.2f}) - severity {result.severity.value.upper()}"
                )
                spikes.append(result)
        return spikes

    @staticmethod
    def suspension_reason(result: SpikeDetectionResult) -> SuspensionReason:
        return SuspensionReason(
            cap_type=result.cap_type,
            current_value=result.current_usage,
            limit_exceeded=math.floor(result.average_usage * result.threshold),
            details=result.details,
        )

    # =========================================================================
    # HISTORY
    # =========================================================================

    async def record_detection(
        self, result: SpikeDetectionResult, action_taken: Optional[DetectionAction] = None
    ) -> SpikeDetection:
        row = SpikeDetection(
            project_id=result.project_id,
            cap_type=result.cap_type,
            current_usage=result.current_usage,
            average_usage=result.average_usage,
            multiplier=result.multiplier,
            threshold=result.threshold,
            detection_window_ms=result.detection_window_ms,
            severity=result.severity,
            action_taken=action_taken or result.action,
            description=result.details,
            detected_at=self.clock(),
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def get_history(self, project_id: UUID, limit: int = 50) -> List[SpikeDetection]:
        result = await self.db.execute(
            select(SpikeDetection)
            .where(SpikeDetection.project_id == project_id)
            .order_by(SpikeDetection.detected_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
