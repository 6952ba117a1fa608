"""
Error Rate Detection
Flags projects whose share of failed requests is abnormally high.
Detections lead to investigation, never to automatic suspension.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..models.database import DetectionAction, ErrorMetric, ErrorRateDetection, ErrorRateDetectionConfig
from ..schemas.detection import ErrorRateDetectionResult, ErrorRateSettings
from .detection_engine import SeverityActionMap, ThresholdDetector
from .thresholds import ERROR_RATE_ACTIONS, ERROR_RATE_SEVERITY_TIERS

logger = logging.getLogger(__name__)


class ErrorRateDetector:
    """Error-rate evaluation over the detection window"""

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

    def default_config(self) -> ErrorRateSettings:
        return ErrorRateSettings(
            threshold_percentage=self.settings.ERROR_RATE_THRESHOLD_PERCENTAGE,
            min_requests=self.settings.ERROR_RATE_MIN_REQUESTS,
            detection_window_ms=self.settings.ERROR_RATE_DETECTION_WINDOW_MS,
        )

    async def get_config(self, project_id: UUID) -> ErrorRateSettings:
        cache_key = f"error_rate_config:{project_id}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return ErrorRateSettings.model_validate(cached)

        config = self.default_config()
        result = await self.db.execute(
            select(ErrorRateDetectionConfig).where(ErrorRateDetectionConfig.project_id == project_id)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            overrides = {
                "enabled": row.enabled,
                "threshold_percentage": row.threshold_percentage,
                "min_requests": row.min_requests,
                "detection_window_ms": row.detection_window_ms,
            }
            config = config.model_copy(update={k: v for k, v in overrides.items() if v is not None})

        if self.cache is not None:
            await self.cache.set(cache_key, config.model_dump())
        return config

    async def get_error_stats(self, project_id: UUID, window_ms: int) -> Tuple[int, int]:
        """(error_count, total_requests) inside the window"""
        since = self.clock() - timedelta(milliseconds=window_ms)
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(ErrorMetric.error_count), 0),
                func.coalesce(func.sum(ErrorMetric.request_count), 0),
            ).where(and_(ErrorMetric.project_id == project_id, ErrorMetric.recorded_at >= since))
        )
        errors, total = result.one()
        return int(errors), int(total)

    async def record_metrics(self, project_id: UUID, request_count: int, error_count: int) -> ErrorMetric:
        metric = ErrorMetric(
            project_id=project_id,
            request_count=request_count,
            error_count=error_count,
            recorded_at=self.clock(),
        )
        self.db.add(metric)
        await self.db.flush()
        return metric

    @staticmethod
    def build_detector(config: ErrorRateSettings) -> ThresholdDetector:
        return ThresholdDetector(
            name="error_rate",
            tiers=ERROR_RATE_SEVERITY_TIERS,
            policy=SeverityActionMap(ERROR_RATE_ACTIONS),
            threshold=config.threshold_percentage,
            min_sample=config.min_requests,
        )

    def evaluate(
        self,
        project_id: UUID,
        error_count: int,
        total_requests: int,
        config: Optional[ErrorRateSettings] = None,
    ) -> ErrorRateDetectionResult:
        config = config or self.default_config()
        error_rate = round(error_count / total_requests * 100, 2) if total_requests > 0 else 0.0
        evaluation = self.build_detector(config).evaluate(error_rate, sample=total_requests)

        details = None
        if evaluation.detected:
            details = (
                f"High error rate detected: {error_rate:.2f}% "
                f"({error_count} errors out of {total_requests} requests)"
            )

        return ErrorRateDetectionResult(
            project_id=project_id,
            error_count=error_count,
            total_requests=total_requests,
            error_rate=error_rate,
            threshold=config.threshold_percentage,
            detection_window_ms=config.detection_window_ms,
            error_rate_detected=evaluation.detected,
            severity=evaluation.severity,
            action=evaluation.action,
            details=details,
        )

    async def check_project(self, project_id: UUID) -> Optional[ErrorRateDetectionResult]:
        """Detection result, or None when disabled or nothing was detected"""
        config = await self.get_config(project_id)
        if not config.enabled:
            return None

        errors, total = await self.get_error_stats(project_id, config.detection_window_ms)
        result = self.evaluate(project_id, errors, total, config)
        if not result.error_rate_detected:
            return None

        logger.warning(
            f"High error rate for project {project_id}: {result.error_rate}% "
            f"({errors}/{total}) - severity {result.severity.value.upper()}"
        )
        return result

    async def record_detection(
        self, result: ErrorRateDetectionResult, action_taken: Optional[DetectionAction] = None
    ) -> ErrorRateDetection:
        row = ErrorRateDetection(
            project_id=result.project_id,
            error_count=result.error_count,
            total_requests=result.total_requests,
            error_rate=result.error_rate,
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

    async def get_history(self, project_id: UUID, limit: int = 50) -> List[ErrorRateDetection]:
        result = await self.db.execute(
            select(ErrorRateDetection)
            .where(ErrorRateDetection.project_id == project_id)
            .order_by(ErrorRateDetection.detected_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
