"""Per-product risk score and the alert cooldown gate."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.config import settings
from scanguard.core.clock import as_utc, utcnow
from scanguard.core.exceptions import NotFoundError
from scanguard.models.manufacturer import Product
from scanguard.models.risk import RiskAlert
from scanguard.repositories.verification_log_repository import ProductLogCounts, VerificationLogRepository
from scanguard.services.escalation_service import schedule_escalation

logger = logging.getLogger(__name__)

SUSPICIOUS_WEIGHT = 0.5
INVALID_WEIGHT = 0.3
REUSE_WEIGHT = 0.2
MEDIUM_THRESHOLD = 30


@dataclass
class ProductRisk:
    product_id: str
    manufacturer_id: str
    score: int
    level: str
    counts: ProductLogCounts
    alert: RiskAlert | None = None
    alert_created: bool = False


def compute_product_risk(counts: ProductLogCounts) -> int:
    if counts.total <= 0:
        return 0
    weighted = (
        SUSPICIOUS_WEIGHT * counts.suspicious
        + INVALID_WEIGHT * counts.invalid
        + REUSE_WEIGHT * counts.already_used
    ) / counts.total
    return min(100, round(100 * weighted))


def risk_level(score: int) -> str:
    if score >= settings.risk_alert_critical:
        return "CRITICAL"
    if score >= settings.risk_alert_high:
        return "HIGH"
    if score >= MEDIUM_THRESHOLD:
        return "MEDIUM"
    return "LOW"


async def active_alert(
    db: AsyncSession, manufacturer_id: str, product_id: str, now: datetime
) -> RiskAlert | None:
    result = await db.execute(
        select(RiskAlert)
        .where(
            RiskAlert.manufacturer_id == manufacturer_id,
            RiskAlert.product_id == product_id,
            RiskAlert.cooldown_until > now,
        )
        .order_by(RiskAlert.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def raise_alert(
    db: AsyncSession,
    manufacturer_id: str,
    product_id: str,
    score: int,
    now: datetime | None = None,
) -> tuple[RiskAlert | None, bool]:
    """Create an alert unless one is still cooling down. Returns (alert, created).

    The cooldown is claimed on the product row with a conditional UPDATE, so
    of two scans crossing the threshold together only one inserts an alert.
    """
    now = as_utc(now) if now else utcnow()
    cooldown_until = now + timedelta(hours=settings.alert_cooldown_hours)
    claimed = await db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            or_(Product.alert_cooldown_until.is_(None), Product.alert_cooldown_until <= now),
        )
        .values(alert_cooldown_until=cooldown_until)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.commit()
        existing = await active_alert(db, manufacturer_id, product_id, now)
        logger.debug("Alert for product %s suppressed by cooldown", product_id)
        return existing, False

    alert = RiskAlert(
        manufacturer_id=manufacturer_id,
        product_id=product_id,
        risk_score=score,
        risk_level=risk_level(score),
        status="pending",
        cooldown_until=cooldown_until,
        created_at=now,
    )
    db.add(alert)
    await db.commit()
    await db.refresh(alert)
    logger.warning(
        "Risk alert %s raised for product %s: score %d (%s)",
        alert.id, product_id, score, alert.risk_level,
    )
    return alert, True


async def _score_product(db: AsyncSession, product_id: str) -> ProductRisk:
    product = await db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)

    counts = await VerificationLogRepository(db).product_counts(product_id)
    score = compute_product_risk(counts)
    return ProductRisk(
        product_id=product.id,
        manufacturer_id=product.manufacturer_id,
        score=score,
        level=risk_level(score),
        counts=counts,
    )


async def get_product_risk(
    db: AsyncSession, product_id: str, now: datetime | None = None
) -> ProductRisk:
    """Current score and any alert still cooling down. Never raises a new alert."""
    report = await _score_product(db, product_id)
    report.alert = await active_alert(
        db, report.manufacturer_id, report.product_id, as_utc(now) if now else utcnow()
    )
    return report


async def evaluate_product_risk(
    db: AsyncSession,
    product_id: str,
    now: datetime | None = None,
    *,
    escalate: bool = True,
) -> ProductRisk:
    """Recompute a product's risk and raise an alert when it crosses the threshold."""
    report = await _score_product(db, product_id)
    if report.score < settings.risk_alert_high:
        return report

    report.alert, report.alert_created = await raise_alert(
        db, report.manufacturer_id, report.product_id, report.score, now=now
    )
    if report.alert_created and escalate:
        schedule_escalation(report.alert.id)
    return report


async def list_alerts(db: AsyncSession, manufacturer_id: str, limit: int = 50) -> list[RiskAlert]:
    result = await db.execute(
        select(RiskAlert)
        .where(RiskAlert.manufacturer_id == manufacturer_id)
        .order_by(RiskAlert.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def recalculate_all_product_risks(
    db: AsyncSession, now: datetime | None = None, *, escalate: bool = True
) -> dict:
    """Score every product. One failure is logged and skipped, never fatal."""
    result = await db.execute(select(Product.id).order_by(Product.created_at))
    product_ids = list(result.scalars().all())

    processed, failed, alerts = 0, 0, 0
    for product_id in product_ids:
        try:
            report = await evaluate_product_risk(db, product_id, now=now, escalate=escalate)
            processed += 1
            alerts += int(report.alert_created)
        except Exception:
            failed += 1
            await db.rollback()
            logger.exception("Risk recompute failed for product %s", product_id)

    logger.info(
        "Recomputed product risks: %d ok, %d failed, %d new alerts", processed, failed, alerts
    )
    return {"processed": processed, "failed": failed, "alerts": alerts}
