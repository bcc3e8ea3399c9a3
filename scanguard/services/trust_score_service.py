"""Manufacturer trust score: gathering, pure scoring, history and trend.

``compute_trust_score`` is pure and takes plain numbers, so the bounds can be
checked over arbitrary inputs without a database.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.core.clock import as_utc, utcnow
from scanguard.core.exceptions import NotFoundError
from scanguard.models.code import Batch
from scanguard.models.manufacturer import Manufacturer, Payment
from scanguard.models.risk import TrustScoreRecord
from scanguard.repositories.verification_log_repository import VerificationLogRepository

logger = logging.getLogger(__name__)

# Weights in percent; component points are integers so the sum stays exact.
WEIGHTS = {
    "verification": 40,
    "payment": 25,
    "compliance": 20,
    "team_activity": 10,
    "batch_quality": 5,
}
NEUTRAL_POINTS = 60
SUSPICIOUS_PENALTY = 30
SUSPICIOUS_PENALTY_THRESHOLD = 5
SUSPICIOUS_LOOKBACK_DAYS = 7
PAYMENT_LOOKBACK = 12
STALE_DOCUMENT_DAYS = 180
TREND_DELTA = 5


@dataclass
class TrustInputs:
    """Raw facts about a manufacturer. Rates are fractions in [0, 1]."""

    genuine_rate: float | None = None
    payment_failure_rate: float | None = None
    license_verified: bool = False
    certificate_verified: bool = False
    website_verified: bool = False
    document_age_days: float = 0.0
    days_since_activity: float = 0.0
    expired_batch_ratio: float | None = None


@dataclass
class TrustScoreBreakdown:
    score: int
    components: dict[str, int]
    weighted_total: float
    penalty: int


def verification_points(genuine_rate: float | None) -> int:
    if genuine_rate is None:
        return NEUTRAL_POINTS
    pct = genuine_rate * 100
    if pct < 70:
        return 30
    if pct < 80:
        return 50
    if pct < 90:
        return 75
    if pct < 95:
        return 90
    return 100


def _ratio_points(ratio: float | None, *, empty: int) -> int:
    if ratio is None:
        return empty
    pct = ratio * 100
    if pct > 20:
        return 40
    if pct > 10:
        return 70
    if pct > 0:
        return 90
    return 100


def payment_points(failure_rate: float | None) -> int:
    return _ratio_points(failure_rate, empty=NEUTRAL_POINTS)


def batch_quality_points(expired_ratio: float | None) -> int:
    return _ratio_points(expired_ratio, empty=100)


def compliance_points(inputs: TrustInputs) -> int:
    points = 100
    if not inputs.license_verified:
        points -= 20
    if not inputs.certificate_verified:
        points -= 20
    if not inputs.website_verified:
        points -= 10
    if inputs.document_age_days > STALE_DOCUMENT_DAYS:
        points -= 15
    return max(points, 0)


def team_activity_points(days_since_activity: float) -> int:
    if days_since_activity > 90:
        return 40
    if days_since_activity > 30:
        return 70
    if days_since_activity > 7:
        return 90
    return 100


def compute_trust_score(inputs: TrustInputs, recent_suspicious: int) -> TrustScoreBreakdown:
    components = {
        "verification": verification_points(inputs.genuine_rate),
        "payment": payment_points(inputs.payment_failure_rate),
        "compliance": compliance_points(inputs),
        "team_activity": team_activity_points(inputs.days_since_activity),
        "batch_quality": batch_quality_points(inputs.expired_batch_ratio),
    }
    weighted = sum(components[name] * weight for name, weight in WEIGHTS.items())
    # Half-up rounding of weighted / 100.
    score = (weighted + 50) // 100

    penalty = SUSPICIOUS_PENALTY if recent_suspicious > SUSPICIOUS_PENALTY_THRESHOLD else 0
    score = max(0, min(100, score - penalty))
    return TrustScoreBreakdown(
        score=score,
        components=components,
        weighted_total=weighted / 100,
        penalty=penalty,
    )


async def gather_inputs(
    db: AsyncSession, manufacturer: Manufacturer, now: datetime
) -> tuple[TrustInputs, int, dict]:
    """Collect trust inputs. Returns (inputs, recent suspicious count, breakdown facts)."""
    logs = VerificationLogRepository(db)
    states = await logs.manufacturer_state_counts(manufacturer.id)
    total_verifications = sum(states.values())
    genuine_rate = (
        states.get("GENUINE", 0) / total_verifications if total_verifications else None
    )

    result = await db.execute(
        select(Payment.status)
        .where(Payment.manufacturer_id == manufacturer.id)
        .order_by(Payment.created_at.desc())
        .limit(PAYMENT_LOOKBACK)
    )
    statuses = list(result.scalars().all())
    failed = sum(1 for status in statuses if status in ("failed", "pending"))
    failure_rate = failed / len(statuses) if statuses else None

    today = as_utc(now).date()
    result = await db.execute(
        select(
            func.count(Batch.id),
            func.sum(case((Batch.expiration_date < today, 1), else_=0)),
        ).where(Batch.manufacturer_id == manufacturer.id)
    )
    total_batches, expired_batches = result.one()
    total_batches = int(total_batches or 0)
    expired_batches = int(expired_batches or 0)
    expired_ratio = expired_batches / total_batches if total_batches else None

    created = as_utc(manufacturer.created_at) or now
    documents_at = as_utc(manufacturer.documents_updated_at) or created
    activity_at = as_utc(manufacturer.last_activity_at) or created
    day = 86400.0

    inputs = TrustInputs(
        genuine_rate=genuine_rate,
        payment_failure_rate=failure_rate,
        license_verified=bool(manufacturer.license_verified),
        certificate_verified=bool(manufacturer.certificate_verified),
        website_verified=bool(manufacturer.website_verified),
        document_age_days=(now - documents_at).total_seconds() / day,
        days_since_activity=(now - activity_at).total_seconds() / day,
        expired_batch_ratio=expired_ratio,
    )
    recent_suspicious = await logs.count_suspicious_since(
        manufacturer.id, now - timedelta(days=SUSPICIOUS_LOOKBACK_DAYS)
    )
    facts = {
        "genuine_verification_rate": round(genuine_rate * 100, 1) if genuine_rate is not None else None,
        "total_verifications": total_verifications,
        "payment_history": len(statuses),
        "expired_batches": expired_batches,
        "days_since_activity": round(inputs.days_since_activity),
        "recent_suspicious": recent_suspicious,
    }
    return inputs, recent_suspicious, facts


async def calculate_trust_score(
    db: AsyncSession, manufacturer_id: str, now: datetime | None = None
) -> TrustScoreRecord:
    """Recompute, cache on the manufacturer and append a history record."""
    now = as_utc(now) if now else utcnow()
    manufacturer = await db.get(Manufacturer, manufacturer_id)
    if manufacturer is None:
        raise NotFoundError("Manufacturer", manufacturer_id)

    inputs, recent_suspicious, facts = await gather_inputs(db, manufacturer, now)
    breakdown = compute_trust_score(inputs, recent_suspicious)

    manufacturer.trust_score = breakdown.score
    manufacturer.last_trust_assessment = now
    record = TrustScoreRecord(
        manufacturer_id=manufacturer.id,
        score=breakdown.score,
        components_json=json.dumps(breakdown.components),
        breakdown_json=json.dumps({**facts, "penalty": breakdown.penalty, "inputs": asdict(inputs)}),
        recorded_at=now,
    )
    db.add(record)
    await db.commit()
    await db.refresh(record)
    logger.info("Trust score for manufacturer %s: %d", manufacturer_id, breakdown.score)
    return record


async def get_trust_score_trend(
    db: AsyncSession, manufacturer_id: str, days: int = 90, now: datetime | None = None
) -> dict:
    now = as_utc(now) if now else utcnow()
    start = now - timedelta(days=days)
    result = await db.execute(
        select(TrustScoreRecord)
        .where(
            TrustScoreRecord.manufacturer_id == manufacturer_id,
            TrustScoreRecord.recorded_at >= start,
        )
        .order_by(TrustScoreRecord.recorded_at.asc())
    )
    records = list(result.scalars().all())
    if not records:
        return {
            "trend": "NO_DATA",
            "average_score": None,
            "lowest_score": None,
            "highest_score": None,
            "history": [],
        }

    scores = [r.score for r in records]
    trend = "STABLE"
    half = len(scores) // 2
    if half:
        first_avg = sum(scores[:half]) / half
        second_avg = sum(scores[half:]) / (len(scores) - half)
        if second_avg > first_avg + TREND_DELTA:
            trend = "IMPROVING"
        elif second_avg < first_avg - TREND_DELTA:
            trend = "DECLINING"

    return {
        "trend": trend,
        "average_score": round(sum(scores) / len(scores)),
        "lowest_score": min(scores),
        "highest_score": max(scores),
        "history": [
            {"recorded_at": as_utc(r.recorded_at), "score": r.score} for r in records
        ],
    }


async def recalculate_all_trust_scores(db: AsyncSession, now: datetime | None = None) -> dict:
    """Score every manufacturer. One failure is logged and skipped, never fatal."""
    now = as_utc(now) if now else utcnow()
    result = await db.execute(select(Manufacturer.id).order_by(Manufacturer.created_at))
    manufacturer_ids = list(result.scalars().all())

    processed, failed = 0, 0
    for manufacturer_id in manufacturer_ids:
        try:
            await calculate_trust_score(db, manufacturer_id, now=now)
            processed += 1
        except Exception:
            failed += 1
            await db.rollback()
            logger.exception("Trust score recompute failed for manufacturer %s", manufacturer_id)

    logger.info("Recomputed trust scores: %d ok, %d failed", processed, failed)
    return {"processed": processed, "failed": failed}
