"""Regulatory agency webhooks, per-agency rate limits and the delivery audit trail."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text

from scanguard.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class AgencyRateLimit(Base):
    __tablename__ = "agency_rate_limits"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agency = Column(String(60), nullable=False, unique=True)
    alerts_per_hour = Column(Integer, nullable=False, default=100)
    alerts_per_day = Column(Integer, nullable=False, default=1000)
    current_hour_count = Column(Integer, nullable=False, default=0)
    current_day_count = Column(Integer, nullable=False, default=0)
    is_throttled = Column(Boolean, nullable=False, default=False)
    hourly_reset_at = Column(DateTime(timezone=True), nullable=False)
    daily_reset_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class RegulatoryWebhook(Base):
    __tablename__ = "regulatory_webhooks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agency = Column(String(60), nullable=False, unique=True)
    url = Column(String(500), nullable=False)
    secret = Column(String(200), nullable=False)
    retry_attempts = Column(Integer, nullable=False, default=3)
    retry_interval_seconds = Column(Float, nullable=False, default=300)
    timeout_seconds = Column(Float, nullable=False, default=30)
    is_active = Column(Boolean, nullable=False, default=True)
    custom_headers_json = Column(Text, nullable=False, default="{}")
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    last_failure_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WebhookDeliveryLog(Base):
    """Record of a single delivery attempt. Append-only."""

    __tablename__ = "webhook_delivery_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    webhook_id = Column(String(36), ForeignKey("regulatory_webhooks.id"), nullable=False)
    alert_id = Column(String(36), nullable=True)
    attempt_number = Column(Integer, nullable=False)
    outcome = Column(String(20), nullable=False)  # success | failed
    response_code = Column(Integer, nullable=True)
    message = Column(Text, default="")
    delay_seconds = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_delivery_log_webhook", "webhook_id", "created_at"),
        Index("idx_delivery_log_alert", "alert_id"),
    )
