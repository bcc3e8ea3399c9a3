"""Optional external AI risk-analysis service.

Every failure mode (transport error, timeout, non-2xx, malformed body) is
raised as ``ExternalServiceDegraded`` so the caller can fall back to the
rule-based score.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from scanguard.config import settings
from scanguard.core.exceptions import ExternalServiceDegraded

logger = logging.getLogger(__name__)

SERVICE_NAME = "ai-risk"


@dataclass(frozen=True)
class AIRiskReply:
    risk_score: float  # normalised to 0.0-1.0
    advisory: str
    suspicious: bool


def _parse_reply(body: Any) -> AIRiskReply:
    if not isinstance(body, dict):
        raise ExternalServiceDegraded(SERVICE_NAME, "reply is not a JSON object")

    raw_score = body.get("risk_score", body.get("riskScore"))
    if isinstance(raw_score, bool) or not isinstance(raw_score, (int, float)):
        raise ExternalServiceDegraded(SERVICE_NAME, "risk_score missing or not numeric")
    score = float(raw_score)
    if score < 0 or score > 100:
        raise ExternalServiceDegraded(SERVICE_NAME, f"risk_score {score} out of range")
    # The service answers on either a 0-1 or a 0-100 scale.
    if score > 1:
        score = score / 100.0

    advisory = body.get("advisory") or ""
    if not isinstance(advisory, str):
        raise ExternalServiceDegraded(SERVICE_NAME, "advisory is not a string")

    return AIRiskReply(
        risk_score=min(1.0, score),
        advisory=advisory.strip(),
        suspicious=bool(body.get("suspicious", False)),
    )


class AIRiskEnhancer:
    def __init__(self, url: str, api_key: str = "", timeout_seconds: float = 5.0):
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls) -> AIRiskEnhancer | None:
        if not settings.ai_risk_enabled or not settings.ai_risk_url:
            return None
        return cls(
            settings.ai_risk_url,
            api_key=settings.ai_risk_api_key,
            timeout_seconds=settings.ai_risk_timeout_seconds,
        )

    async def analyze(self, code_value: str, context: dict[str, Any]) -> AIRiskReply:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.url,
                    json={"code_value": code_value, **context},
                    headers=headers,
                )
        except httpx.TimeoutException as exc:
            raise ExternalServiceDegraded(
                SERVICE_NAME, f"timeout after {self.timeout_seconds}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceDegraded(SERVICE_NAME, f"transport error: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise ExternalServiceDegraded(SERVICE_NAME, f"HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalServiceDegraded(SERVICE_NAME, "reply is not valid JSON") from exc
        return _parse_reply(body)
