"""Manufacturer-side reference data read by the scoring engine.

Rows here are written by the onboarding and billing layers; the core only
updates the cached trust score and the website verification flag.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String

from scanguard.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Manufacturer(Base):
    __tablename__ = "manufacturers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    website = Column(String(500), nullable=True)
    license_verified = Column(Boolean, nullable=False, default=False)
    certificate_verified = Column(Boolean, nullable=False, default=False)
    website_verified = Column(Boolean, nullable=False, default=False)
    documents_updated_at = Column(DateTime(timezone=True), nullable=True)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    trust_score = Column(Integer, nullable=True)
    last_trust_assessment = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    manufacturer_id = Column(String(36), ForeignKey("manufacturers.id"), nullable=False)
    name = Column(String(200), nullable=False)
    category = Column(String(30), nullable=False, default="other")  # drugs | food | cosmetics | other
    # Claimed with a conditional UPDATE before a risk alert is inserted.
    alert_cooldown_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_product_manufacturer", "manufacturer_id"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    manufacturer_id = Column(String(36), ForeignKey("manufacturers.id"), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending | paid | failed
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_payment_manufacturer_created", "manufacturer_id", "created_at"),
    )
