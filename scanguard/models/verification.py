import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from scanguard.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class VerificationLog(Base):
    """One scan attempt. Append-only: the anomaly rules read this table as history."""

    __tablename__ = "verification_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code_value = Column(String(64), nullable=False)
    code_id = Column(String(36), nullable=True)
    batch_id = Column(String(36), nullable=True)
    product_id = Column(String(36), nullable=True)
    manufacturer_id = Column(String(36), nullable=True)
    actor_id = Column(String(36), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    state = Column(String(30), nullable=False)
    suspicious = Column(Boolean, nullable=False, default=False)
    anomaly_score = Column(Float, nullable=False, default=0.0)
    risk_score = Column(Integer, nullable=False, default=0)
    advisory = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_vlog_code_created", "code_value", "created_at"),
        Index("idx_vlog_product", "product_id"),
        Index("idx_vlog_manufacturer_created", "manufacturer_id", "created_at"),
    )
