from datetime import datetime

from pydantic import BaseModel, Field


class WebhookUpsertRequest(BaseModel):
    url: str = Field(..., min_length=8, max_length=500)
    retry_attempts: int | None = Field(None, ge=1, le=10)
    retry_interval_seconds: float | None = Field(None, ge=0)
    timeout_seconds: float | None = Field(None, gt=0, le=120)
    custom_headers: dict[str, str] = {}
    is_active: bool = True


class WebhookRegisteredResponse(BaseModel):
    id: str
    agency: str
    url: str
    is_active: bool
    retry_attempts: int
    retry_interval_seconds: float
    timeout_seconds: float
    secret: str


class DeliveryLogResponse(BaseModel):
    id: str
    alert_id: str | None = None
    attempt_number: int
    outcome: str
    response_code: int | None = None
    message: str | None = None
    delay_seconds: float
    created_at: datetime

    model_config = {"from_attributes": True}


class WebhookStatusResponse(BaseModel):
    agency: str
    url: str
    is_active: bool
    retry_attempts: int
    retry_interval_seconds: float
    timeout_seconds: float
    custom_headers: dict[str, str] = {}
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    failure_reason: str | None = None
    total_attempts: int
    success_rate: float | None = None
    recent_deliveries: list[DeliveryLogResponse] = []


class RateLimitUpdateRequest(BaseModel):
    alerts_per_hour: int = Field(..., ge=1)
    alerts_per_day: int = Field(..., ge=1)


class RateLimitStatusResponse(BaseModel):
    agency: str
    allowed: bool
    hourly_count: int
    daily_count: int
    hourly_limit: int
    daily_limit: int
    hourly_reset_at: datetime
    daily_reset_at: datetime

    model_config = {"from_attributes": True}


class WebhookTestResponse(BaseModel):
    agency: str
    status: str
    response_code: int | None = None
    message: str = ""
