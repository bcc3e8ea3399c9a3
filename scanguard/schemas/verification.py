from datetime import date, datetime

from pydantic import BaseModel, Field


class VerifyRequest(BaseModel):
    code_value: str = Field(..., min_length=1, max_length=64)
    latitude: float | None = Field(None, ge=-90, le=90)
    longitude: float | None = Field(None, ge=-180, le=180)
    actor_id: str | None = Field(None, max_length=36)
    manufacturer_id: str | None = Field(None, max_length=36)


class VerifyResponse(BaseModel):
    code_value: str
    state: str
    overlay: list[str] = []
    suspicious: bool
    anomaly_score: float
    risk_score: int
    advisory: str
    trust_decision: str
    expired: bool = False
    batch_number: str | None = None
    expiration_date: date | None = None
    product_id: str | None = None
    product_name: str | None = None
    manufacturer_id: str | None = None
    manufacturer_name: str | None = None
    verified_at: datetime
    scan_count: int = 0

    model_config = {"from_attributes": True}
