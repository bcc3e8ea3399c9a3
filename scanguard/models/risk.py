"""Derived aggregates: product risk alerts, trust history, website checks."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from scanguard.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class RiskAlert(Base):
    __tablename__ = "risk_alerts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    manufacturer_id = Column(String(36), ForeignKey("manufacturers.id"), nullable=False)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    risk_score = Column(Integer, nullable=False)
    risk_level = Column(String(20), nullable=False)  # HIGH | CRITICAL
    status = Column(String(20), nullable=False, default="pending")  # pending | sent | failed
    failure_reason = Column(Text, nullable=True)
    cooldown_until = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    # Set when delivery was deferred by the agency rate limit.
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_risk_alert_product_cooldown", "manufacturer_id", "product_id", "cooldown_until"),
        Index("idx_risk_alert_created", "created_at"),
        Index("idx_risk_alert_redelivery", "status", "next_attempt_at"),
    )


class TrustScoreRecord(Base):
    __tablename__ = "trust_score_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    manufacturer_id = Column(String(36), ForeignKey("manufacturers.id"), nullable=False)
    score = Column(Integer, nullable=False)
    components_json = Column(Text, nullable=False, default="{}")
    breakdown_json = Column(Text, nullable=False, default="{}")
    recorded_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_trust_record_manufacturer", "manufacturer_id", "recorded_at"),
    )


class WebsiteCheck(Base):
    __tablename__ = "website_checks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    manufacturer_id = Column(String(36), ForeignKey("manufacturers.id"), nullable=False)
    domain = Column(String(255), nullable=True)
    risk_score = Column(Integer, nullable=False, default=50)
    verdict = Column(String(20), nullable=False)  # LEGITIMATE | MODERATE | SUSPICIOUS | INCOMPLETE
    has_ssl = Column(Boolean, nullable=True)
    reachable = Column(Boolean, nullable=True)
    details_json = Column(Text, nullable=False, default="{}")
    checked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_website_check_manufacturer", "manufacturer_id", "checked_at"),
    )
