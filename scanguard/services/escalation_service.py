"""Regulatory escalation: signed webhook delivery with rate limits and backoff.

Every attempt is written to ``webhook_delivery_logs``. The rate-limit slot is
reserved before the first attempt and released if no attempt succeeds.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.config import settings
from scanguard.core.async_tasks import fire_and_forget
from scanguard.core.clock import as_utc, utcnow
from scanguard.core.exceptions import NotFoundError, TransientDeliveryError, ValidationError
from scanguard.core.signing import canonical_json, generate_webhook_secret, sign_body
from scanguard.database import async_session
from scanguard.models.manufacturer import Manufacturer, Product
from scanguard.models.regulatory import RegulatoryWebhook, WebhookDeliveryLog
from scanguard.models.risk import RiskAlert
from scanguard.models.verification import VerificationLog
from scanguard.repositories.webhook_repository import WebhookRepository
from scanguard.services import agency_rate_limit_service
from scanguard.services.regulatory_routing import get_regulatory_body

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-ScanGuard-Signature"
ATTEMPT_HEADER = "X-ScanGuard-Attempt"
TIMESTAMP_HEADER = "X-ScanGuard-Timestamp"
EVENT_HEADER = "X-ScanGuard-Event"
TEST_EVENT = "webhook_test"


@dataclass
class EscalationResult:
    status: str  # skipped | deferred | sent | failed
    agency: str
    attempts: int = 0
    alert_id: str | None = None
    response_code: int | None = None
    message: str = ""
    retry_at: datetime | None = None


def _json_load(value: Any, fallback: Any) -> Any:
    if not value:
        return fallback
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return fallback


def backoff_delay(base_seconds: float, attempt: int) -> float:
    """Delay slept before ``attempt`` (1-based). Nothing before the first."""
    if attempt <= 1:
        return 0.0
    return float(base_seconds) * 2 ** (attempt - 2)


def build_alert_payload(agency: str, alert: dict[str, Any], now: datetime) -> dict[str, Any]:
    return {
        "timestamp": as_utc(now).isoformat(),
        "agency": agency,
        "alert": {
            "code_value": alert.get("code_value"),
            "reason": alert.get("reason"),
            "severity": alert.get("severity"),
            "manufacturer_id": alert.get("manufacturer_id"),
            "manufacturer_name": alert.get("manufacturer_name"),
            "product_category": alert.get("product_category"),
        },
    }


# ---------------------------------------------------------------------------
# Webhook registration
# ---------------------------------------------------------------------------

async def register_webhook(
    db: AsyncSession,
    agency: str,
    url: str,
    *,
    retry_attempts: int | None = None,
    retry_interval_seconds: float | None = None,
    timeout_seconds: float | None = None,
    custom_headers: dict[str, str] | None = None,
    is_active: bool = True,
) -> tuple[RegulatoryWebhook, str]:
    """Create or replace an agency's webhook. A fresh secret is issued every time."""
    agency = (agency or "").strip().upper()
    if not agency:
        raise ValidationError("agency is required")
    if not url.startswith(("http://", "https://")):
        raise ValidationError("webhook url must be http(s)")
    if retry_attempts is not None and retry_attempts < 1:
        raise ValidationError("retry_attempts must be at least 1")

    repo = WebhookRepository(db)
    secret = generate_webhook_secret()
    webhook = await repo.get_for_agency(agency)
    if webhook is None:
        webhook = RegulatoryWebhook(agency=agency, url=url, secret=secret)
        await repo.add(webhook)
    webhook.url = url
    webhook.secret = secret
    webhook.is_active = is_active
    webhook.retry_attempts = retry_attempts or settings.webhook_default_retry_attempts
    webhook.retry_interval_seconds = (
        retry_interval_seconds
        if retry_interval_seconds is not None
        else settings.webhook_default_retry_interval_seconds
    )
    webhook.timeout_seconds = timeout_seconds or settings.webhook_default_timeout_seconds
    webhook.custom_headers_json = json.dumps(custom_headers or {})
    webhook.failure_reason = None
    await db.commit()
    await db.refresh(webhook)
    await agency_rate_limit_service.ensure_agency(db, agency)
    logger.info("Registered webhook for agency %s -> %s", agency, url)
    return webhook, secret


async def get_webhook_status(db: AsyncSession, agency: str, recent: int = 20) -> dict[str, Any]:
    agency = agency.strip().upper()
    repo = WebhookRepository(db)
    webhook = await repo.get_for_agency(agency)
    if webhook is None:
        raise NotFoundError("Webhook", agency)

    counts = await repo.outcome_counts(webhook.id)
    total = sum(counts.values())
    logs = await repo.recent_logs(webhook.id, limit=recent)
    return {
        "agency": webhook.agency,
        "url": webhook.url,
        "is_active": webhook.is_active,
        "retry_attempts": webhook.retry_attempts,
        "retry_interval_seconds": webhook.retry_interval_seconds,
        "timeout_seconds": webhook.timeout_seconds,
        "custom_headers": _json_load(webhook.custom_headers_json, {}),
        "last_success_at": as_utc(webhook.last_success_at),
        "last_failure_at": as_utc(webhook.last_failure_at),
        "failure_reason": webhook.failure_reason,
        "total_attempts": total,
        "success_rate": round(counts.get("success", 0) / total * 100, 1) if total else None,
        "recent_deliveries": logs,
    }


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

async def _post_once(
    client: httpx.AsyncClient,
    webhook: RegulatoryWebhook,
    body: str,
    headers: dict[str, str],
) -> int:
    """One delivery attempt. Returns the 2xx status code or raises TransientDeliveryError."""
    try:
        response = await client.post(
            webhook.url,
            content=body.encode("utf-8"),
            headers=headers,
            timeout=webhook.timeout_seconds,
        )
    except httpx.TimeoutException as exc:
        raise TransientDeliveryError(f"timeout after {webhook.timeout_seconds}s") from exc
    except httpx.HTTPError as exc:
        raise TransientDeliveryError(f"network error: {exc}") from exc

    if not 200 <= response.status_code < 300:
        text = (response.text or "")[:500]
        raise TransientDeliveryError(
            f"HTTP {response.status_code}: {text}".strip(), response_code=response.status_code
        )
    return response.status_code


async def notify_agency(
    db: AsyncSession,
    agency: str,
    alert_payload: dict[str, Any],
    alert_id: str | None = None,
    now: datetime | None = None,
) -> EscalationResult:
    """Deliver one alert to ``agency``'s webhook, retrying with exponential backoff."""
    agency = agency.strip().upper()
    repo = WebhookRepository(db)
    webhook = await repo.get_for_agency(agency)
    if webhook is None or not webhook.is_active:
        logger.info("No active webhook for agency %s, alert %s not delivered", agency, alert_id)
        return EscalationResult(status="skipped", agency=agency, alert_id=alert_id)

    decision = await agency_rate_limit_service.check_and_increment(db, agency, now=now)
    if not decision.allowed:
        retry_at = (
            decision.daily_reset_at
            if decision.daily_count >= decision.daily_limit
            else decision.hourly_reset_at
        )
        return EscalationResult(
            status="deferred",
            agency=agency,
            alert_id=alert_id,
            message=f"rate limited until {retry_at.isoformat()}",
            retry_at=retry_at,
        )

    payload = build_alert_payload(agency, alert_payload, now or utcnow())
    body = canonical_json(payload)
    signature = sign_body(webhook.secret, body)
    base_headers = {
        **_json_load(webhook.custom_headers_json, {}),
        "Content-Type": "application/json",
        SIGNATURE_HEADER: signature,
        TIMESTAMP_HEADER: payload["timestamp"],
    }

    max_attempts = max(1, int(webhook.retry_attempts or 1))
    last_error: TransientDeliveryError | None = None
    response_code: int | None = None
    attempts = 0

    async with httpx.AsyncClient() as client:
        for attempt in range(1, max_attempts + 1):
            delay = backoff_delay(webhook.retry_interval_seconds, attempt)
            if delay:
                await asyncio.sleep(delay)
            attempts = attempt

            try:
                response_code = await _post_once(
                    client, webhook, body, {**base_headers, ATTEMPT_HEADER: str(attempt)}
                )
            except TransientDeliveryError as exc:
                last_error = exc
                response_code = exc.response_code
                await repo.log_attempt(
                    WebhookDeliveryLog(
                        webhook_id=webhook.id,
                        alert_id=alert_id,
                        attempt_number=attempt,
                        outcome="failed",
                        response_code=exc.response_code,
                        message=str(exc)[:1000],
                        delay_seconds=delay,
                        created_at=utcnow(),
                    )
                )
                await db.commit()
                logger.warning(
                    "Webhook delivery to %s failed (attempt %d/%d): %s",
                    agency, attempt, max_attempts, exc,
                )
                continue

            await repo.log_attempt(
                WebhookDeliveryLog(
                    webhook_id=webhook.id,
                    alert_id=alert_id,
                    attempt_number=attempt,
                    outcome="success",
                    response_code=response_code,
                    message="delivered",
                    delay_seconds=delay,
                    created_at=utcnow(),
                )
            )
            webhook.last_success_at = now or utcnow()
            webhook.failure_reason = None
            await db.commit()
            logger.info("Alert %s delivered to %s on attempt %d", alert_id, agency, attempt)
            return EscalationResult(
                status="sent",
                agency=agency,
                attempts=attempt,
                alert_id=alert_id,
                response_code=response_code,
                message="delivered",
            )

    reason = str(last_error) if last_error else "no attempt made"
    webhook.last_failure_at = now or utcnow()
    webhook.failure_reason = reason[:1000]
    await db.commit()
    await agency_rate_limit_service.release(db, decision, now=now)
    logger.error("Alert %s to %s failed after %d attempts: %s", alert_id, agency, attempts, reason)
    return EscalationResult(
        status="failed",
        agency=agency,
        attempts=attempts,
        alert_id=alert_id,
        response_code=response_code,
        message=reason,
    )


async def send_test_event(
    db: AsyncSession, agency: str, now: datetime | None = None
) -> EscalationResult:
    """Send one signed ``webhook_test`` event so an agency can check its endpoint.

    A single attempt, logged like any delivery. No rate-limit slot is taken.
    """
    agency = agency.strip().upper()
    repo = WebhookRepository(db)
    webhook = await repo.get_for_agency(agency)
    if webhook is None:
        raise NotFoundError("Webhook", agency)

    payload = {
        "event": TEST_EVENT,
        "timestamp": as_utc(now or utcnow()).isoformat(),
        "agency": agency,
        "message": "Test delivery from ScanGuard",
    }
    body = canonical_json(payload)
    headers = {
        **_json_load(webhook.custom_headers_json, {}),
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_body(webhook.secret, body),
        TIMESTAMP_HEADER: payload["timestamp"],
        EVENT_HEADER: TEST_EVENT,
        ATTEMPT_HEADER: "1",
    }

    async with httpx.AsyncClient() as client:
        try:
            response_code = await _post_once(client, webhook, body, headers)
        except TransientDeliveryError as exc:
            outcome, response_code, message = "failed", exc.response_code, str(exc)
        else:
            outcome, message = "success", "test delivered"

    await repo.log_attempt(
        WebhookDeliveryLog(
            webhook_id=webhook.id,
            alert_id=None,
            attempt_number=1,
            outcome=outcome,
            response_code=response_code,
            message=f"{TEST_EVENT}: {message}"[:1000],
            delay_seconds=0,
            created_at=utcnow(),
        )
    )
    await db.commit()
    logger.info("Test event to %s: %s", agency, outcome)
    return EscalationResult(
        status="sent" if outcome == "success" else "failed",
        agency=agency,
        attempts=1,
        response_code=response_code,
        message=message,
    )


# ---------------------------------------------------------------------------
# Alert dispatch
# ---------------------------------------------------------------------------

async def _latest_flagged_code(db: AsyncSession, product_id: str) -> str | None:
    result = await db.execute(
        select(VerificationLog.code_value)
        .where(VerificationLog.product_id == product_id, VerificationLog.suspicious.is_(True))
        .order_by(VerificationLog.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def escalate_alert(db: AsyncSession, alert_id: str, now: datetime | None = None) -> EscalationResult:
    alert = await db.get(RiskAlert, alert_id)
    if alert is None:
        raise NotFoundError("RiskAlert", alert_id)
    product = await db.get(Product, alert.product_id)
    manufacturer = await db.get(Manufacturer, alert.manufacturer_id)

    category = product.category if product else None
    agency = get_regulatory_body(category)
    payload = {
        "code_value": await _latest_flagged_code(db, alert.product_id),
        "reason": f"Product risk score {alert.risk_score} ({alert.risk_level})",
        "severity": alert.risk_level,
        "manufacturer_id": alert.manufacturer_id,
        "manufacturer_name": manufacturer.name if manufacturer else None,
        "product_category": category,
    }
    result = await notify_agency(db, agency, payload, alert_id=alert.id, now=now)

    if result.status == "sent":
        alert.status = "sent"
        alert.sent_at = now or utcnow()
        alert.failure_reason = None
        alert.next_attempt_at = None
    elif result.status == "failed":
        alert.status = "failed"
        alert.failure_reason = result.message[:1000]
        alert.next_attempt_at = None
    elif result.status == "deferred":
        alert.next_attempt_at = result.retry_at
        logger.info("Alert %s deferred until %s", alert.id, result.retry_at)
    await db.commit()
    return result


async def redeliver_deferred_alerts(db: AsyncSession, now: datetime | None = None) -> dict:
    """Retry pending alerts whose rate-limit deferral has expired.

    Only alerts still inside their cooldown are retried; past it, a fresh
    alert can be raised for the product instead.
    """
    now = now or utcnow()
    result = await db.execute(
        select(RiskAlert.id)
        .where(
            RiskAlert.status == "pending",
            RiskAlert.next_attempt_at.is_not(None),
            RiskAlert.next_attempt_at <= now,
            RiskAlert.cooldown_until > now,
        )
        .order_by(RiskAlert.created_at)
    )
    alert_ids = list(result.scalars().all())

    outcomes = {"attempted": 0, "sent": 0, "deferred": 0, "failed": 0}
    for alert_id in alert_ids:
        outcomes["attempted"] += 1
        try:
            escalation = await escalate_alert(db, alert_id, now=now)
        except Exception:
            outcomes["failed"] += 1
            await db.rollback()
            logger.exception("Redelivery of alert %s failed", alert_id)
            continue
        if escalation.status in outcomes:
            outcomes[escalation.status] += 1

    if alert_ids:
        logger.info(
            "Redelivered deferred alerts: %d attempted, %d sent, %d still deferred",
            outcomes["attempted"], outcomes["sent"], outcomes["deferred"],
        )
    return outcomes


async def _escalate_in_own_session(alert_id: str) -> EscalationResult:
    async with async_session() as db:
        return await escalate_alert(db, alert_id)


def schedule_escalation(alert_id: str):
    """Escalate in the background; the scan that raised the alert does not wait."""
    return fire_and_forget(
        _escalate_in_own_session(alert_id), task_name=f"escalate-alert-{alert_id}"
    )
