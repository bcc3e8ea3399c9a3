import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String

from scanguard.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class Batch(Base):
    __tablename__ = "batches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    batch_number = Column(String(80), nullable=False)
    manufacturer_id = Column(String(36), ForeignKey("manufacturers.id"), nullable=False)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=True)
    production_date = Column(Date, nullable=True)
    expiration_date = Column(Date, nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_batch_manufacturer", "manufacturer_id"),
        Index("idx_batch_product", "product_id"),
    )


class Code(Base):
    """A public serial value. ``used`` flips to true once and never back."""

    __tablename__ = "codes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    value = Column(String(64), nullable=False, unique=True)
    batch_id = Column(String(36), ForeignKey("batches.id"), nullable=True)
    manufacturer_id = Column(String(36), ForeignKey("manufacturers.id"), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    first_verified_at = Column(DateTime(timezone=True), nullable=True)
    scan_count = Column(Integer, nullable=False, default=0)
    qr_image_ref = Column(String(300), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_code_batch", "batch_id"),
        Index("idx_code_manufacturer", "manufacturer_id"),
    )
