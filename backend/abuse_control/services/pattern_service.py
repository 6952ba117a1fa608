"""
Malicious Pattern Detection
Fixed signature checks: SQL injection, auth brute force, rapid API key creation.
Each signature reads its signals from a pluggable source.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Pattern
from uuid import UUID

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, get_settings
from ..models.database import (
    ActivityEvent, ActivityType, DetectionAction, PatternDetection, PatternDetectionConfig,
    PatternType, Severity,
)
from ..schemas.detection import PatternDetectionResult, PatternSignatureSettings, SqlInjectionMatch
from ..schemas.quota import SuspensionReason
from .detection_engine import ActionRuleTable, ThresholdDetector
from .thresholds import (
    MAX_EVIDENCE_ITEMS, PATTERN_ACTION_RULES, PATTERN_MIN_OCCURRENCES, PATTERN_SEVERITY_TIERS,
    PATTERN_SUSPENSION_CAP, RULE_CONFIDENCE,
)

logger = logging.getLogger(__name__)


# ============================================================================
# SQL INJECTION RULES
# ============================================================================

@dataclass(frozen=True)
class SqlInjectionRule:
    pattern: Pattern
    severity: Severity
    description: str


# Ordered from most to least specific
SQL_INJECTION_RULES: List[SqlInjectionRule] = [
    SqlInjectionRule(
        re.compile(r"\bunion\b(\s+all)?\s+select\b", re.IGNORECASE),
        Severity.SEVERE,
        "UNION SELECT injection",
    ),
    SqlInjectionRule(
        re.compile(r"\bor\b\s+['\"]?(\w+)['\"]?\s*=\s*['\"]?\1\b", re.IGNORECASE),
        Severity.SEVERE,
        "Tautology (OR x=x)",
    ),
    SqlInjectionRule(
        re.compile(r"\b(xp_cmdshell|sp_executesql|exec\s+master)\b|;\s*(shutdown|drop\s+(table|database))\b", re.IGNORECASE),
        Severity.SEVERE,
        "Command execution or destructive statement",
    ),
    SqlInjectionRule(
        re.compile(r"\b(sleep|pg_sleep|benchmark)\s*\(|\bwaitfor\s+delay\b", re.IGNORECASE),
        Severity.CRITICAL,
        "Time-based blind injection",
    ),
    SqlInjectionRule(
        re.compile(r"'\s*(--|#|/\*)|;\s*--"),
        Severity.CRITICAL,
        "Quote followed by comment sequence",
    ),
    SqlInjectionRule(
        re.compile(r"'\s*;|'\s*\)\s*;"),
        Severity.CRITICAL,
        "Quote terminating a statement",
    ),
    SqlInjectionRule(
        re.compile(r"\b(select|insert|update|delete|drop|alter|create|truncate)\b", re.IGNORECASE),
        Severity.WARNING,
        "SQL keyword in input",
    ),
]


def detect_sql_injection(text: Optional[str]) -> SqlInjectionMatch:
    """Scan one input; confidence is that of the most severe matching rule"""
    if not text:
        return SqlInjectionMatch(matched=False)

    evidence = []
    best: Optional[SqlInjectionRule] = None
    for rule in SQL_INJECTION_RULES:
        if rule.pattern.search(text):
            evidence.append(rule.description)
            if best is None or RULE_CONFIDENCE[rule.severity] > RULE_CONFIDENCE[best.severity]:
                best = rule

    if best is None:
        return SqlInjectionMatch(matched=False)
    return SqlInjectionMatch(
        matched=True,
        confidence=RULE_CONFIDENCE[best.severity],
        details=best.description,
        evidence=evidence,
    )


# ============================================================================
# SIGNAL SOURCES
# ============================================================================

@dataclass(frozen=True)
class ActivitySignal:
    recorded_at: datetime
    payload: Optional[str] = None
    ip_address: Optional[str] = None


class PatternSignalSource:
    """Supplies the raw signals one signature evaluates"""

    async def fetch(self, db: AsyncSession, project_id: UUID, since: datetime) -> List[ActivitySignal]:
        raise NotImplementedError


class ActivityEventSource(PatternSignalSource):
    """Reads one event type from the activity_events table"""

    def __init__(self, event_type: ActivityType, limit: int = 5000):
        self.event_type = event_type
        self.limit = limit

    async def fetch(self, db: AsyncSession, project_id: UUID, since: datetime) -> List[ActivitySignal]:
        result = await db.execute(
            select(ActivityEvent)
            .where(
                and_(
                    ActivityEvent.project_id == project_id,
                    ActivityEvent.event_type == self.event_type,
                    ActivityEvent.recorded_at >= since,
                )
            )
            .order_by(ActivityEvent.recorded_at.desc())
            .limit(self.limit)
        )
        return [
            ActivitySignal(recorded_at=e.recorded_at, payload=e.payload, ip_address=e.ip_address)
            for e in result.scalars().all()
        ]


def default_signal_sources() -> Dict[PatternType, PatternSignalSource]:
    return {
        PatternType.SQL_INJECTION: ActivityEventSource(ActivityType.QUERY),
        PatternType.AUTH_BRUTE_FORCE: ActivityEventSource(ActivityType.AUTH_FAILURE),
        PatternType.RAPID_KEY_CREATION: ActivityEventSource(ActivityType.KEY_CREATED),
    }


# ============================================================================
# DETECTOR
# ============================================================================

class PatternDetector:
    """Runs every enabled signature for a project; each positive is reported separately"""

    def __init__(
        self,
        db: AsyncSession,
        sources: Optional[Dict[PatternType, PatternSignalSource]] = None,
        cache=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.sources = sources or default_signal_sources()
        self.cache = cache
        self.settings = settings or get_settings()
        self.clock = clock

    # =========================================================================
    # CONFIG
    # =========================================================================

    def default_config(self, pattern_type: PatternType) -> PatternSignatureSettings:
        return PatternSignatureSettings(
            pattern_type=pattern_type,
            enabled=True,
            suspend_on_detection=self.settings.PATTERN_SUSPEND_ON_DETECTION,
            min_occurrences=PATTERN_MIN_OCCURRENCES[pattern_type],
            detection_window_ms=self.settings.PATTERN_DETECTION_WINDOW_MS,
        )

    async def get_config(self, project_id: UUID) -> Dict[PatternType, PatternSignatureSettings]:
        cache_key = f"pattern_config:{project_id}"
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return {
                    PatternType(k): PatternSignatureSettings.model_validate(v) for k, v in cached.items()
                }

        configs = {pattern_type: self.default_config(pattern_type) for pattern_type in PatternType}
        result = await self.db.execute(
            select(PatternDetectionConfig).where(PatternDetectionConfig.project_id == project_id)
        )
        for row in result.scalars().all():
            overrides = {
                "enabled": row.enabled,
                "suspend_on_detection": row.suspend_on_detection,
                "min_occurrences": row.min_occurrences,
                "detection_window_ms": row.detection_window_ms,
            }
            configs[row.pattern_type] = configs[row.pattern_type].model_copy(
                update={k: v for k, v in overrides.items() if v is not None}
            )

        if self.cache is not None:
            await self.cache.set(
                cache_key, {k.value: v.model_dump(mode="json") for k, v in configs.items()}
            )
        return configs

    # =========================================================================
    # SIGNATURES
    # =========================================================================

    def _evaluate(
        self,
        config: PatternSignatureSettings,
        occurrences: int,
        severity_value: Optional[float] = None,
    ):
        detector = ThresholdDetector(
            name=config.pattern_type.value,
            tiers=PATTERN_SEVERITY_TIERS[config.pattern_type],
            policy=ActionRuleTable(PATTERN_ACTION_RULES),
            threshold=config.min_occurrences,
        )
        evaluation = detector.evaluate(occurrences, severity_value=severity_value, occurrences=occurrences)
        action = evaluation.action
        if action == DetectionAction.SUSPEND and not config.suspend_on_detection:
            action = DetectionAction.WARNING
        return evaluation, action

    async def _signals(self, project_id: UUID, config: PatternSignatureSettings) -> List[ActivitySignal]:
        since = self.clock() - timedelta(milliseconds=config.detection_window_ms)
        return await self.sources[config.pattern_type].fetch(self.db, project_id, since)

    async def detect_sql_injection(
        self, project_id: UUID, config: PatternSignatureSettings
    ) -> Optional[PatternDetectionResult]:
        signals = await self._signals(project_id, config)
        matches = [m for m in (detect_sql_injection(s.payload) for s in signals) if m.matched]
        if not matches:
            return None

        average_confidence = sum(m.confidence for m in matches) / len(matches)
        evaluation, action = self._evaluate(config, len(matches), severity_value=average_confidence)
        if not evaluation.detected:
            return None

        minutes = config.detection_window_ms // 60000
        return PatternDetectionResult(
            project_id=project_id,
            pattern_type=PatternType.SQL_INJECTION,
            severity=evaluation.severity,
            occurrence_count=len(matches),
            detection_window_ms=config.detection_window_ms,
            description=(
                f"Detected {len(matches)} potential SQL injection attempt(s) "
                f"in the last {minutes} minutes"
            ),
            evidence=[m.details for m in matches][:MAX_EVIDENCE_ITEMS],
            action=action,
            metadata={"average_confidence": round(average_confidence, 2)},
        )

    async def detect_auth_brute_force(
        self, project_id: UUID, config: PatternSignatureSettings
    ) -> Optional[PatternDetectionResult]:
        signals = await self._signals(project_id, config)
        evaluation, action = self._evaluate(config, len(signals))
        if not evaluation.detected:
            return None

        by_ip = Counter(s.ip_address or "unknown" for s in signals)
        minutes = config.detection_window_ms // 60000
        return PatternDetectionResult(
            project_id=project_id,
            pattern_type=PatternType.AUTH_BRUTE_FORCE,
            severity=evaluation.severity,
            occurrence_count=len(signals),
            detection_window_ms=config.detection_window_ms,
            description=(
                f"Detected {len(signals)} failed authentication attempt(s) from "
                f"{len(by_ip)} unique IP(s) in the last {minutes} minutes"
            ),
            evidence=[f"{ip}: {count} attempt(s)" for ip, count in by_ip.most_common(MAX_EVIDENCE_ITEMS)],
            action=action,
            metadata={"unique_ips": len(by_ip)},
        )

    async def detect_rapid_key_creation(
        self, project_id: UUID, config: PatternSignatureSettings
    ) -> Optional[PatternDetectionResult]:
        signals = await self._signals(project_id, config)
        evaluation, action = self._evaluate(config, len(signals))
        if not evaluation.detected:
            return None

        minutes = config.detection_window_ms // 60000
        return PatternDetectionResult(
            project_id=project_id,
            pattern_type=PatternType.RAPID_KEY_CREATION,
            severity=evaluation.severity,
            occurrence_count=len(signals),
            detection_window_ms=config.detection_window_ms,
            description=f"Detected {len(signals)} API key(s) created in {minutes} minutes",
            evidence=[
                f"{s.recorded_at.isoformat()} {s.payload or ''}".strip() for s in signals
            ][:MAX_EVIDENCE_ITEMS],
            action=action,
        )

    async def check_project(self, project_id: UUID) -> List[PatternDetectionResult]:
        configs = await self.get_config(project_id)
        checks = {
            PatternType.SQL_INJECTION: self.detect_sql_injection,
            PatternType.AUTH_BRUTE_FORCE: self.detect_auth_brute_force,
            PatternType.RAPID_KEY_CREATION: self.detect_rapid_key_creation,
        }

        detections = []
        for pattern_type, check in checks.items():
            config = configs[pattern_type]
            if not config.enabled:
                continue
            result = await check(project_id, config)
            if result is not None:
                logger.warning(
                    f"Pattern {pattern_type.value} detected for project {project_id}: "
                    f"{result.description} - severity {result.severity.value.upper()}"
                )
                detections.append(result)
        return detections

    @staticmethod
    def suspension_reason(result: PatternDetectionResult) -> SuspensionReason:
        return SuspensionReason(
            cap_type=PATTERN_SUSPENSION_CAP[result.pattern_type],
            current_value=result.occurrence_count,
            limit_exceeded=result.occurrence_count,
            details=result.description,
        )

    # =========================================================================
    # HISTORY
    # =========================================================================

    async def record_detection(
        self, result: PatternDetectionResult, action_taken: Optional[DetectionAction] = None
    ) -> PatternDetection:
        row = PatternDetection(
            project_id=result.project_id,
            pattern_type=result.pattern_type,
            severity=result.severity,
            occurrence_count=result.occurrence_count,
            detection_window_ms=result.detection_window_ms,
            evidence=result.evidence[:MAX_EVIDENCE_ITEMS],
            action_taken=action_taken or result.action,
            description=result.description,
            detected_at=self.clock(),
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def get_history(self, project_id: UUID, limit: int = 50) -> List[PatternDetection]:
        result = await self.db.execute(
            select(PatternDetection)
            .where(PatternDetection.project_id == project_id)
            .order_by(PatternDetection.detected_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
