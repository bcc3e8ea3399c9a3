"""Scan-time verification state machine.

Base states, first match wins:

1. INVALID               - value not in the registry
2. UNREGISTERED_PRODUCT  - code exists but has no batch/product, or the
                           claimed manufacturer does not own it
3. CODE_ALREADY_USED     - code was consumed by an earlier scan
4. GENUINE               - this scan won the first-use transition

SUSPICIOUS_PATTERN is reported as an overlay on top of the base state when
the code's prior history trips an anomaly rule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.core.clock import as_utc, utcnow
from scanguard.core.exceptions import ValidationError
from scanguard.models.code import Batch, Code
from scanguard.models.manufacturer import Manufacturer, Product
from scanguard.models.verification import VerificationLog
from scanguard.repositories.code_repository import CodeRepository
from scanguard.repositories.verification_log_repository import VerificationLogRepository
from scanguard.services import anomaly_service, risk_service
from scanguard.services.ai_risk_client import AIRiskEnhancer
from scanguard.services.code_registry_service import normalize_code_value
from scanguard.services.trust_decision import decide

logger = logging.getLogger(__name__)

INVALID = "INVALID"
UNREGISTERED_PRODUCT = "UNREGISTERED_PRODUCT"
CODE_ALREADY_USED = "CODE_ALREADY_USED"
GENUINE = "GENUINE"
SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"

_STATE_ADVISORIES = {
    INVALID: "This code is not registered. The product may be counterfeit.",
    UNREGISTERED_PRODUCT: "This code is not linked to a registered product.",
    CODE_ALREADY_USED: "This code has already been verified. Do not accept a reused code.",
    GENUINE: "Product verified as genuine.",
}


@dataclass
class ScanEvent:
    code_value: str
    manufacturer_id: str | None = None
    actor_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    timestamp: datetime | None = None


@dataclass
class VerificationResult:
    code_value: str
    state: str
    overlay: list[str] = field(default_factory=list)
    suspicious: bool = False
    anomaly_score: float = 0.0
    risk_score: int = 0
    advisory: str = ""
    trust_decision: str = ""
    expired: bool = False
    batch_number: str | None = None
    expiration_date: date | None = None
    product_id: str | None = None
    product_name: str | None = None
    manufacturer_id: str | None = None
    manufacturer_name: str | None = None
    verified_at: datetime | None = None
    scan_count: int = 0


def _validate_coordinates(event: ScanEvent) -> None:
    if (event.latitude is None) != (event.longitude is None):
        raise ValidationError("latitude and longitude must be supplied together")
    if event.latitude is not None and not -90 <= event.latitude <= 90:
        raise ValidationError("latitude out of range")
    if event.longitude is not None and not -180 <= event.longitude <= 180:
        raise ValidationError("longitude out of range")


async def _resolve_state(
    repo: CodeRepository, event: ScanEvent, value: str, now: datetime
) -> tuple[str, Code | None, Batch | None, Product | None]:
    code = await repo.get_by_value(value)
    if code is None:
        return INVALID, None, None, None

    batch = await repo.get_batch(code.batch_id)
    product = await repo.get_product(batch.product_id) if batch else None
    if batch is None or product is None:
        return UNREGISTERED_PRODUCT, code, batch, product
    if event.manufacturer_id and event.manufacturer_id != code.manufacturer_id:
        return UNREGISTERED_PRODUCT, code, batch, product

    if code.used:
        await repo.increment_scan_count(value)
        return CODE_ALREADY_USED, code, batch, product

    if await repo.mark_used(value, now):
        return GENUINE, code, batch, product
    # Lost the first-use race to a concurrent scan.
    await repo.increment_scan_count(value)
    return CODE_ALREADY_USED, code, batch, product


async def verify(
    db: AsyncSession,
    event: ScanEvent,
    *,
    enhancer: AIRiskEnhancer | None = None,
    escalate: bool = True,
) -> VerificationResult:
    """Verify one scan, log it and refresh the product's risk."""
    value = normalize_code_value(event.code_value)
    if not value:
        raise ValidationError("code_value is required")
    _validate_coordinates(event)
    now = as_utc(event.timestamp) if event.timestamp else utcnow()

    repo = CodeRepository(db)
    state, code, batch, product = await _resolve_state(repo, event, value, now)

    assessment = await anomaly_service.assess_code(db, value, state, now, enhancer=enhancer)
    manufacturer_id = code.manufacturer_id if code else None
    manufacturer: Manufacturer | None = await repo.get_manufacturer(manufacturer_id)
    expired = bool(batch and batch.expiration_date and batch.expiration_date < now.date())

    advisories = [_STATE_ADVISORIES[state]]
    if expired:
        advisories.append("This batch has expired.")
    if assessment.advisory:
        advisories.append(assessment.advisory)
    advisory = " ".join(advisories)

    await VerificationLogRepository(db).append(
        VerificationLog(
            code_value=value,
            code_id=code.id if code else None,
            batch_id=batch.id if batch else None,
            product_id=product.id if product else None,
            manufacturer_id=manufacturer_id,
            actor_id=event.actor_id,
            latitude=event.latitude,
            longitude=event.longitude,
            state=state,
            suspicious=assessment.suspicious,
            anomaly_score=assessment.score,
            risk_score=assessment.risk_score,
            advisory=advisory,
            created_at=now,
        )
    )
    await db.commit()

    refreshed = await repo.get_by_value(value) if code else None
    if assessment.suspicious:
        logger.warning(
            "Suspicious pattern on code %s (state %s, score %.2f)", value, state, assessment.score
        )

    if product is not None:
        await risk_service.evaluate_product_risk(db, product.id, now=now, escalate=escalate)

    return VerificationResult(
        code_value=value,
        state=state,
        overlay=[SUSPICIOUS_PATTERN] if assessment.suspicious else [],
        suspicious=assessment.suspicious,
        anomaly_score=assessment.score,
        risk_score=assessment.risk_score,
        advisory=advisory,
        trust_decision=decide(
            state, assessment.risk_score, suspicious=assessment.suspicious, expired=expired
        ).value,
        expired=expired,
        batch_number=batch.batch_number if batch else None,
        expiration_date=batch.expiration_date if batch else None,
        product_id=product.id if product else None,
        product_name=product.name if product else None,
        manufacturer_id=manufacturer_id,
        manufacturer_name=manufacturer.name if manufacturer else None,
        verified_at=now,
        scan_count=refreshed.scan_count if refreshed else 0,
    )
