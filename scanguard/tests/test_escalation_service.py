"""Tests for signed regulatory webhook delivery, retries and alert dispatch."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from scanguard.core.async_tasks import drain_background_tasks
from scanguard.core.clock import as_utc
from scanguard.core.exceptions import NotFoundError, ValidationError
from scanguard.core.signing import verify_signature
from scanguard.models.risk import RiskAlert
from scanguard.models.verification import VerificationLog
from scanguard.repositories.webhook_repository import WebhookRepository
from scanguard.services import agency_rate_limit_service, escalation_service, risk_service
from scanguard.services.escalation_service import backoff_delay


class _RecordingClient:
    """Stands in for httpx.AsyncClient; replays queued outcomes in order."""

    calls = []
    outcomes = []

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, content=None, headers=None, timeout=None):
        type(self).calls.append({"url": url, "content": content, "headers": headers})
        outcome = type(self).outcomes.pop(0) if type(self).outcomes else 500
        if isinstance(outcome, Exception):
            raise outcome

        class _Response:
            status_code = outcome
            text = "ok" if outcome < 300 else "upstream unavailable"

        return _Response()


@pytest.fixture
def http(monkeypatch):
    _RecordingClient.calls = []
    _RecordingClient.outcomes = []
    monkeypatch.setattr("scanguard.services.escalation_service.httpx.AsyncClient", _RecordingClient)
    return _RecordingClient


ALERT = {
    "code_value": "SG-ABCDEFGHJK",
    "reason": "Product risk score 72 (CRITICAL)",
    "severity": "CRITICAL",
    "manufacturer_id": "m-1",
    "manufacturer_name": "Acme Pharma",
    "product_category": "drugs",
}


def test_backoff_schedule():
    assert [backoff_delay(300, n) for n in (1, 2, 3, 4)] == [0, 300, 600, 1200]


async def test_register_webhook_rotates_secret(make_webhook, db):
    first, first_secret = await make_webhook(agency="nafdac")
    second, second_secret = await make_webhook(agency="NAFDAC", url="https://agency.example/v2")

    assert first.id == second.id
    assert second.agency == "NAFDAC"
    assert second.url == "https://agency.example/v2"
    assert first_secret != second_secret
    assert second_secret.startswith("whsec_")
    # Registering also provisions the agency's rate limits.
    assert (await agency_rate_limit_service.get_status(db, "NAFDAC")).hourly_count == 0


@pytest.mark.parametrize("url,attempts", [("ftp://agency.example", 3), ("https://agency.example", 0)])
async def test_register_webhook_validation(make_webhook, url, attempts):
    with pytest.raises(ValidationError):
        await make_webhook(url=url, retry_attempts=attempts)


@patch("scanguard.services.escalation_service.asyncio.sleep", new_callable=AsyncMock)
async def test_success_is_signed_and_logged(mock_sleep, make_webhook, db, http, fixed_now):
    _, secret = await make_webhook(custom_headers={"X-Agency-Key": "k-1"})
    http.outcomes = [202]

    result = await escalation_service.notify_agency(db, "NAFDAC", ALERT, alert_id="alert-1", now=fixed_now)

    assert result.status == "sent"
    assert result.attempts == 1
    mock_sleep.assert_not_called()

    call = http.calls[0]
    body = call["content"]
    assert verify_signature(secret, body, call["headers"]["X-ScanGuard-Signature"])
    assert call["headers"]["X-ScanGuard-Attempt"] == "1"
    assert call["headers"]["X-Agency-Key"] == "k-1"
    payload = json.loads(body)
    assert payload["agency"] == "NAFDAC"
    assert payload["alert"]["code_value"] == "SG-ABCDEFGHJK"

    status = await agency_rate_limit_service.get_status(db, "NAFDAC")
    assert status.hourly_count == 1

    webhook_status = await escalation_service.get_webhook_status(db, "NAFDAC")
    assert webhook_status["success_rate"] == 100.0
    assert webhook_status["last_success_at"] is not None


@patch("scanguard.services.escalation_service.asyncio.sleep", new_callable=AsyncMock)
async def test_always_failing_endpoint_exhausts_retries(mock_sleep, make_webhook, db, http, fixed_now):
    await make_webhook(retry_attempts=3, retry_interval_seconds=300)
    http.outcomes = [500, httpx.ConnectError("refused"), 503]

    result = await escalation_service.notify_agency(db, "NAFDAC", ALERT, alert_id="alert-2", now=fixed_now)

    assert result.status == "failed"
    assert result.attempts == 3
    assert len(http.calls) == 3
    assert [c.args[0] for c in mock_sleep.await_args_list] == [300, 600]

    logs = await WebhookRepository(db).logs_for_alert("alert-2")
    assert [log.attempt_number for log in logs] == [1, 2, 3]
    assert [log.delay_seconds for log in logs] == [0, 300, 600]
    assert all(log.outcome == "failed" for log in logs)
    assert logs[0].response_code == 500
    assert logs[1].response_code is None

    # The reserved slot is handed back when nothing got through.
    status = await agency_rate_limit_service.get_status(db, "NAFDAC")
    assert status.hourly_count == 0
    assert status.daily_count == 0

    webhook_status = await escalation_service.get_webhook_status(db, "NAFDAC")
    assert webhook_status["failure_reason"].startswith("HTTP 503")
    assert webhook_status["success_rate"] == 0.0


@patch("scanguard.services.escalation_service.asyncio.sleep", new_callable=AsyncMock)
async def test_recovers_on_retry(mock_sleep, make_webhook, db, http, fixed_now):
    await make_webhook(retry_attempts=3, retry_interval_seconds=10)
    http.outcomes = [httpx.ReadTimeout("slow"), 200]

    result = await escalation_service.notify_agency(db, "NAFDAC", ALERT, alert_id="alert-3", now=fixed_now)

    assert result.status == "sent"
    assert result.attempts == 2
    assert [call["headers"]["X-ScanGuard-Attempt"] for call in http.calls] == ["1", "2"]
    logs = await WebhookRepository(db).logs_for_alert("alert-3")
    assert [log.outcome for log in logs] == ["failed", "success"]
    assert (await agency_rate_limit_service.get_status(db, "NAFDAC")).hourly_count == 1


async def test_no_webhook_is_skipped(db, http, fixed_now):
    result = await escalation_service.notify_agency(db, "FIRS", ALERT, now=fixed_now)
    assert result.status == "skipped"
    assert http.calls == []


async def test_inactive_webhook_is_skipped(make_webhook, db, http, fixed_now):
    await make_webhook(agency="FIRS", is_active=False)
    result = await escalation_service.notify_agency(db, "FIRS", ALERT, now=fixed_now)
    assert result.status == "skipped"


async def test_rate_limited_alert_is_deferred(make_webhook, db, http, fixed_now):
    await make_webhook()
    await agency_rate_limit_service.update_limits(db, "NAFDAC", per_hour=1, per_day=5, now=fixed_now)
    http.outcomes = [200, 200]

    first = await escalation_service.notify_agency(db, "NAFDAC", ALERT, now=fixed_now)
    second = await escalation_service.notify_agency(db, "NAFDAC", ALERT, now=fixed_now + timedelta(minutes=1))

    assert first.status == "sent"
    assert second.status == "deferred"
    assert len(http.calls) == 1


async def _risky_product(make_batch, db, now):
    manufacturer, product, _, codes = await make_batch(quantity=1, category="drugs")
    db.add(VerificationLog(code_value=codes[0].value, product_id=product.id,
                           manufacturer_id=manufacturer.id, state="CODE_ALREADY_USED",
                           suspicious=True, created_at=now))
    await db.commit()
    return manufacturer, product, codes[0].value


async def test_escalate_alert_marks_sent(make_batch, make_webhook, db, http, fixed_now):
    manufacturer, product, code_value = await _risky_product(make_batch, db, fixed_now)
    await make_webhook(agency="NAFDAC")
    alert, _ = await risk_service.raise_alert(db, manufacturer.id, product.id, 72, now=fixed_now)
    http.outcomes = [200]

    result = await escalation_service.escalate_alert(db, alert.id, now=fixed_now)

    assert result.status == "sent"
    await db.refresh(alert)
    assert alert.status == "sent"
    assert alert.sent_at is not None
    payload = json.loads(http.calls[0]["content"])
    assert payload["alert"]["code_value"] == code_value
    assert payload["alert"]["severity"] == "CRITICAL"
    assert payload["alert"]["manufacturer_name"] == manufacturer.name


@patch("scanguard.services.escalation_service.asyncio.sleep", new_callable=AsyncMock)
async def test_escalate_alert_marks_failed(mock_sleep, make_batch, make_webhook, db, http, fixed_now):
    manufacturer, product, _ = await _risky_product(make_batch, db, fixed_now)
    await make_webhook(agency="NAFDAC", retry_attempts=2)
    alert, _ = await risk_service.raise_alert(db, manufacturer.id, product.id, 55, now=fixed_now)

    result = await escalation_service.escalate_alert(db, alert.id, now=fixed_now)

    assert result.status == "failed"
    await db.refresh(alert)
    assert alert.status == "failed"
    assert alert.failure_reason


async def test_escalate_without_webhook_leaves_alert_pending(make_batch, db, http, fixed_now):
    manufacturer, product, _ = await _risky_product(make_batch, db, fixed_now)
    alert, _ = await risk_service.raise_alert(db, manufacturer.id, product.id, 60, now=fixed_now)

    result = await escalation_service.escalate_alert(db, alert.id, now=fixed_now)
    assert result.status == "skipped"
    await db.refresh(alert)
    assert alert.status == "pending"


async def test_escalate_unknown_alert(db):
    with pytest.raises(NotFoundError):
        await escalation_service.escalate_alert(db, "missing")


async def test_new_alert_is_escalated_in_background(make_batch, make_webhook, db, http, fixed_now):
    _, product, _ = await _risky_product(make_batch, db, fixed_now)
    await make_webhook(agency="NAFDAC")
    http.outcomes = [200]

    report = await risk_service.evaluate_product_risk(db, product.id, now=fixed_now)
    assert report.alert_created is True

    await drain_background_tasks(timeout_seconds=2.0)

    await db.refresh(report.alert)
    assert report.alert.status == "sent"
    assert len(http.calls) == 1
    stored = await db.get(RiskAlert, report.alert.id)
    assert stored.sent_at is not None


async def test_deferred_alert_is_redelivered_after_reset(make_batch, make_webhook, db, http, fixed_now):
    await agency_rate_limit_service.update_limits(db, "NAFDAC", per_hour=1, per_day=5, now=fixed_now)
    await make_webhook(agency="NAFDAC")
    manufacturer, product, _ = await _risky_product(make_batch, db, fixed_now)
    http.outcomes = [200, 200]

    # Another alert already used this hour's only slot.
    assert (await escalation_service.notify_agency(db, "NAFDAC", ALERT, now=fixed_now)).status == "sent"

    alert, _ = await risk_service.raise_alert(db, manufacturer.id, product.id, 72, now=fixed_now)
    deferred = await escalation_service.escalate_alert(db, alert.id, now=fixed_now + timedelta(minutes=5))
    assert deferred.status == "deferred"
    await db.refresh(alert)
    assert alert.status == "pending"
    assert as_utc(alert.next_attempt_at) == datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)

    early = await escalation_service.redeliver_deferred_alerts(db, now=fixed_now + timedelta(minutes=30))
    assert early["attempted"] == 0

    after_reset = datetime(2026, 3, 2, 11, 1, tzinfo=timezone.utc)
    summary = await escalation_service.redeliver_deferred_alerts(db, now=after_reset)
    assert summary == {"attempted": 1, "sent": 1, "deferred": 0, "failed": 0}

    await db.refresh(alert)
    assert alert.status == "sent"
    assert alert.next_attempt_at is None
    assert len(http.calls) == 2


async def test_skipped_alert_is_not_redelivered(make_batch, db, http, fixed_now):
    manufacturer, product, _ = await _risky_product(make_batch, db, fixed_now)
    alert, _ = await risk_service.raise_alert(db, manufacturer.id, product.id, 60, now=fixed_now)
    await escalation_service.escalate_alert(db, alert.id, now=fixed_now)

    summary = await escalation_service.redeliver_deferred_alerts(db, now=fixed_now + timedelta(hours=2))
    assert summary["attempted"] == 0
    assert http.calls == []


async def test_test_event_is_signed_and_takes_no_slot(make_webhook, db, http, fixed_now):
    _, secret = await make_webhook()
    http.outcomes = [200]

    result = await escalation_service.send_test_event(db, "nafdac", now=fixed_now)

    assert result.status == "sent"
    assert result.attempts == 1
    call = http.calls[0]
    assert verify_signature(secret, call["content"], call["headers"]["X-ScanGuard-Signature"])
    assert call["headers"]["X-ScanGuard-Event"] == "webhook_test"
    body = json.loads(call["content"])
    assert body["event"] == "webhook_test"
    assert body["agency"] == "NAFDAC"

    status = await escalation_service.get_webhook_status(db, "NAFDAC")
    assert status["total_attempts"] == 1
    assert status["recent_deliveries"][0].alert_id is None
    assert (await agency_rate_limit_service.get_status(db, "NAFDAC")).hourly_count == 0


async def test_test_event_failure_is_not_retried(make_webhook, db, http, fixed_now):
    await make_webhook(retry_attempts=3)
    http.outcomes = [503, 200]

    result = await escalation_service.send_test_event(db, "NAFDAC", now=fixed_now)

    assert result.status == "failed"
    assert result.response_code == 503
    assert len(http.calls) == 1
    status = await escalation_service.get_webhook_status(db, "NAFDAC")
    assert [log.outcome for log in status["recent_deliveries"]] == ["failed"]


async def test_test_event_unknown_agency(db, http):
    with pytest.raises(NotFoundError):
        await escalation_service.send_test_event(db, "FIRS")
