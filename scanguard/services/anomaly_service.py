"""Per-code anomaly scoring.

History rules:
- location: distinct (lat, lon) pairs among every log for the code in the
  trailing window (unbounded count, logs without coordinates ignored);
- frequency: total verifications ever recorded for the code.

History is always read before the current scan is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.config import settings
from scanguard.core.clock import as_utc
from scanguard.core.exceptions import ExternalServiceDegraded
from scanguard.models.verification import VerificationLog
from scanguard.repositories.verification_log_repository import VerificationLogRepository
from scanguard.services.ai_risk_client import AIRiskEnhancer

logger = logging.getLogger(__name__)

ADVISORY_SEPARATOR = " | "


@dataclass
class CodeHistory:
    window_logs: list[VerificationLog]
    total_count: int

    @property
    def distinct_locations(self) -> int:
        points = {
            (round(log.latitude, 6), round(log.longitude, 6))
            for log in self.window_logs
            if log.latitude is not None and log.longitude is not None
        }
        return len(points)


@dataclass
class AnomalyAssessment:
    score: float = 0.0
    suspicious: bool = False
    reasons: list[str] = field(default_factory=list)
    advisory: str = ""
    ai_consulted: bool = False

    @property
    def risk_score(self) -> int:
        return min(100, round(self.score * 100))


class RuleBasedScorer:
    """Deterministic rules over stored history. Always runs."""

    def __init__(
        self,
        *,
        location_weight: float | None = None,
        frequency_weight: float | None = None,
        frequency_threshold: int | None = None,
        unregistered_weight: float | None = None,
        unregistered_threshold: int | None = None,
    ):
        self.location_weight = settings.anomaly_location_weight if location_weight is None else location_weight
        self.frequency_weight = settings.anomaly_frequency_weight if frequency_weight is None else frequency_weight
        self.frequency_threshold = (
            settings.anomaly_frequency_threshold if frequency_threshold is None else frequency_threshold
        )
        self.unregistered_weight = (
            settings.anomaly_unregistered_weight if unregistered_weight is None else unregistered_weight
        )
        self.unregistered_threshold = (
            settings.anomaly_unregistered_threshold if unregistered_threshold is None else unregistered_threshold
        )

    def score(self, history: CodeHistory, base_state: str) -> AnomalyAssessment:
        result = AnomalyAssessment()
        score = 0.0

        locations = history.distinct_locations
        if locations >= 2:
            score += self.location_weight
            result.suspicious = True
            result.reasons.append(
                f"Scanned from {locations} locations within {settings.anomaly_window_minutes} minutes"
            )

        if history.total_count >= self.frequency_threshold:
            score += self.frequency_weight
            result.suspicious = True
            result.reasons.append(f"Verified {history.total_count} times before")

        if base_state == "UNREGISTERED_PRODUCT" and history.total_count >= self.unregistered_threshold:
            score += self.unregistered_weight
            result.reasons.append("Repeated scans of an unregistered code")

        result.score = min(1.0, round(score, 4))
        result.advisory = "; ".join(result.reasons)
        return result


def merge_ai_reply(assessment: AnomalyAssessment, reply) -> AnomalyAssessment:
    """Max of the two scores; advisories concatenated."""
    assessment.score = min(1.0, max(assessment.score, reply.risk_score))
    assessment.suspicious = assessment.suspicious or reply.suspicious
    if reply.advisory:
        parts = [p for p in (assessment.advisory, reply.advisory) if p]
        assessment.advisory = ADVISORY_SEPARATOR.join(parts)
    assessment.ai_consulted = True
    return assessment


async def load_history(
    db: AsyncSession, code_value: str, now: datetime
) -> CodeHistory:
    repo = VerificationLogRepository(db)
    since = as_utc(now) - timedelta(minutes=settings.anomaly_window_minutes)
    window_logs = await repo.list_for_code_since(code_value, since)
    total = await repo.count_for_code(code_value)
    return CodeHistory(window_logs=window_logs, total_count=total)


async def assess_code(
    db: AsyncSession,
    code_value: str,
    base_state: str,
    now: datetime,
    *,
    scorer: RuleBasedScorer | None = None,
    enhancer: AIRiskEnhancer | None = None,
) -> AnomalyAssessment:
    history = await load_history(db, code_value, now)
    assessment = (scorer or RuleBasedScorer()).score(history, base_state)

    if enhancer is None:
        enhancer = AIRiskEnhancer.from_settings()
    if enhancer is None:
        return assessment

    context = {
        "state": base_state,
        "rule_score": assessment.score,
        "total_verifications": history.total_count,
        "distinct_locations": history.distinct_locations,
        "recent": [
            {
                "latitude": log.latitude,
                "longitude": log.longitude,
                "state": log.state,
                "created_at": as_utc(log.created_at).isoformat(),
            }
            for log in history.window_logs[:20]
        ],
    }
    try:
        reply = await enhancer.analyze(code_value, context)
    except ExternalServiceDegraded as exc:
        logger.warning("AI risk analysis skipped for %s: %s", code_value, exc)
        return assessment
    return merge_ai_reply(assessment, reply)
