"""Tests for rule-based anomaly scoring and the optional AI enhancer."""

from datetime import timedelta

import httpx
import pytest

from scanguard.core.exceptions import ExternalServiceDegraded
from scanguard.models.verification import VerificationLog
from scanguard.services import anomaly_service
from scanguard.services.ai_risk_client import AIRiskEnhancer, AIRiskReply
from scanguard.services.anomaly_service import CodeHistory, RuleBasedScorer


def _log(lat=None, lon=None, state="CODE_ALREADY_USED"):
    return VerificationLog(code_value="SG-X", latitude=lat, longitude=lon, state=state)


def test_no_history_scores_zero():
    result = RuleBasedScorer().score(CodeHistory(window_logs=[], total_count=0), "GENUINE")
    assert result.score == 0.0
    assert result.suspicious is False
    assert result.advisory == ""


def test_two_locations_in_window_scores_location_weight():
    history = CodeHistory(window_logs=[_log(6.5, 3.4), _log(9.0, 7.4)], total_count=2)
    result = RuleBasedScorer().score(history, "CODE_ALREADY_USED")
    assert result.score == pytest.approx(0.6)
    assert result.suspicious is True


def test_logs_without_coordinates_do_not_count_as_locations():
    history = CodeHistory(window_logs=[_log(6.5, 3.4), _log(), _log()], total_count=3)
    result = RuleBasedScorer().score(history, "CODE_ALREADY_USED")
    assert result.score == 0.0


def test_frequency_rule_at_threshold():
    below = RuleBasedScorer().score(CodeHistory(window_logs=[], total_count=4), "CODE_ALREADY_USED")
    at = RuleBasedScorer().score(CodeHistory(window_logs=[], total_count=5), "CODE_ALREADY_USED")
    assert below.score == 0.0
    assert at.score == pytest.approx(0.3)
    assert at.suspicious is True


def test_unregistered_repeat_adds_weight_without_overlay():
    history = CodeHistory(window_logs=[], total_count=3)
    result = RuleBasedScorer().score(history, "UNREGISTERED_PRODUCT")
    assert result.score == pytest.approx(0.2)
    assert result.suspicious is False


def test_score_is_capped_at_one():
    scorer = RuleBasedScorer(location_weight=0.8, frequency_weight=0.5)
    history = CodeHistory(window_logs=[_log(1, 1), _log(2, 2)], total_count=9)
    result = scorer.score(history, "UNREGISTERED_PRODUCT")
    assert result.score == 1.0
    assert result.risk_score == 100


class _FixedEnhancer:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def analyze(self, code_value, context):
        self.calls.append((code_value, context))
        if self.error:
            raise self.error
        return self.reply


async def test_ai_reply_merged_by_max_and_joined_advisory(db, fixed_now):
    for i in range(5):
        db.add(VerificationLog(code_value="SG-AI1", state="CODE_ALREADY_USED",
                               created_at=fixed_now - timedelta(minutes=i + 1)))
    await db.commit()

    enhancer = _FixedEnhancer(AIRiskReply(risk_score=0.85, advisory="Pattern matches diversion", suspicious=True))
    result = await anomaly_service.assess_code(db, "SG-AI1", "CODE_ALREADY_USED", fixed_now, enhancer=enhancer)

    assert result.score == pytest.approx(0.85)
    assert result.ai_consulted is True
    assert " | " in result.advisory
    assert result.advisory.endswith("Pattern matches diversion")
    assert enhancer.calls[0][1]["total_verifications"] == 5


async def test_ai_lower_score_does_not_reduce_rule_score(db, fixed_now):
    for i in range(5):
        db.add(VerificationLog(code_value="SG-AI2", state="CODE_ALREADY_USED",
                               created_at=fixed_now - timedelta(minutes=i + 1)))
    await db.commit()

    enhancer = _FixedEnhancer(AIRiskReply(risk_score=0.1, advisory="", suspicious=False))
    result = await anomaly_service.assess_code(db, "SG-AI2", "CODE_ALREADY_USED", fixed_now, enhancer=enhancer)
    assert result.score == pytest.approx(0.3)
    assert result.suspicious is True


async def test_ai_failure_falls_back_to_rule_score(db, fixed_now):
    enhancer = _FixedEnhancer(error=ExternalServiceDegraded("ai-risk", "timeout"))
    result = await anomaly_service.assess_code(db, "SG-AI3", "GENUINE", fixed_now, enhancer=enhancer)
    assert result.score == 0.0
    assert result.ai_consulted is False


async def test_enhancer_disabled_by_default():
    assert AIRiskEnhancer.from_settings() is None


# ---------------------------------------------------------------------------
# AIRiskEnhancer transport handling
# ---------------------------------------------------------------------------

def _patch_client(monkeypatch, *, status_code=200, body=None, raises=None):
    class _DummyResponse:
        def __init__(self):
            self.status_code = status_code

        def json(self):
            if isinstance(body, Exception):
                raise body
            return body

    class _DummyClient:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, *args, **kwargs):
            if raises:
                raise raises
            return _DummyResponse()

    monkeypatch.setattr("scanguard.services.ai_risk_client.httpx.AsyncClient", _DummyClient)


async def test_enhancer_normalises_percent_scores(monkeypatch):
    _patch_client(monkeypatch, body={"risk_score": 72, "advisory": "high", "suspicious": True})
    reply = await AIRiskEnhancer("https://ai.example/score").analyze("SG-1", {})
    assert reply.risk_score == pytest.approx(0.72)
    assert reply.suspicious is True


@pytest.mark.parametrize(
    "kwargs",
    [
        {"status_code": 503, "body": {}},
        {"body": {"advisory": "no score"}},
        {"body": {"risk_score": "high"}},
        {"body": {"risk_score": 250}},
        {"body": ["not", "an", "object"]},
        {"body": ValueError("bad json")},
        {"raises": httpx.ConnectError("refused")},
        {"raises": httpx.ReadTimeout("slow")},
    ],
)
async def test_enhancer_failures_raise_degraded(monkeypatch, kwargs):
    _patch_client(monkeypatch, **kwargs)
    with pytest.raises(ExternalServiceDegraded):
        await AIRiskEnhancer("https://ai.example/score").analyze("SG-1", {})
