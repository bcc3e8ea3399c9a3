from datetime import datetime

from pydantic import BaseModel


class RiskAlertResponse(BaseModel):
    id: str
    manufacturer_id: str
    product_id: str
    risk_score: int
    risk_level: str
    status: str
    failure_reason: str | None = None
    cooldown_until: datetime
    created_at: datetime
    sent_at: datetime | None = None

    model_config = {"from_attributes": True}


class RiskAlertListResponse(BaseModel):
    alerts: list[RiskAlertResponse]
    count: int


class ProductRiskResponse(BaseModel):
    product_id: str
    manufacturer_id: str
    risk_score: int
    risk_level: str
    total_verifications: int
    suspicious: int
    invalid: int
    already_used: int
    alert: RiskAlertResponse | None = None


class TrustScoreResponse(BaseModel):
    manufacturer_id: str
    score: int
    components: dict[str, int]
    breakdown: dict
    recorded_at: datetime


class TrustPoint(BaseModel):
    recorded_at: datetime
    score: int


class TrustTrendResponse(BaseModel):
    manufacturer_id: str
    days: int
    trend: str
    average_score: int | None = None
    lowest_score: int | None = None
    highest_score: int | None = None
    history: list[TrustPoint] = []
