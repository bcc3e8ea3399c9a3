"""Code registry: batch creation, first-use transition and lookup."""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.config import settings
from scanguard.core.clock import utcnow
from scanguard.core.exceptions import DuplicateCodeError, NotFoundError, ScanGuardError, ValidationError
from scanguard.models.code import Batch, Code
from scanguard.models.manufacturer import Manufacturer, Product
from scanguard.repositories.code_repository import CodeRepository

logger = logging.getLogger(__name__)

# No 0/O or 1/I: codes are read aloud and typed by hand.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass
class MarkUsedResult:
    code: Code
    transitioned: bool


@dataclass
class CodeContext:
    code: Code
    batch: Batch | None
    product: Product | None
    manufacturer: Manufacturer | None


def normalize_code_value(value: str) -> str:
    return (value or "").strip().upper()


def generate_code_value() -> str:
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(settings.code_length))
    return f"{settings.code_prefix}{body}"


def qr_image_ref(batch_number: str, value: str) -> str:
    return f"qr/{batch_number}/{value}.png"


async def _allocate_values(repo: CodeRepository, quantity: int) -> list[str]:
    """Draw ``quantity`` distinct values that are not yet in the registry."""
    chosen: set[str] = set()
    for _ in range(settings.code_generation_max_retries):
        candidates: set[str] = set()
        while len(chosen) + len(candidates) < quantity:
            value = generate_code_value()
            if value not in chosen:
                candidates.add(value)
        taken = await repo.existing_values(candidates)
        if taken:
            logger.debug("Regenerating %d colliding code values", len(taken))
        chosen.update(candidates - taken)
        if len(chosen) >= quantity:
            return list(chosen)
    raise DuplicateCodeError(f"{quantity - len(chosen)} values still colliding")


async def create_batch_codes(
    db: AsyncSession,
    manufacturer_id: str,
    product_id: str,
    batch_number: str,
    expiration_date: date | None,
    quantity: int,
    production_date: date | None = None,
) -> tuple[Batch, list[Code]]:
    """Create a batch and ``quantity`` unique codes in one transaction."""
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    if quantity > settings.max_batch_quantity:
        raise ValidationError(
            f"quantity must not exceed {settings.max_batch_quantity}"
        )
    batch_number = (batch_number or "").strip()
    if not batch_number:
        raise ValidationError("batch_number is required")
    if production_date and expiration_date and expiration_date < production_date:
        raise ValidationError("expiration_date must not precede production_date")

    repo = CodeRepository(db)
    manufacturer = await repo.get_manufacturer(manufacturer_id)
    if manufacturer is None:
        raise NotFoundError("Manufacturer", manufacturer_id)
    product = await repo.get_product(product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    if product.manufacturer_id != manufacturer_id:
        raise ValidationError("product does not belong to this manufacturer")

    # Tracked by id: a rollback expires the ORM instances.
    manufacturer_pk = manufacturer.id
    for attempt in range(1, settings.code_generation_max_retries + 1):
        try:
            values = await _allocate_values(repo, quantity)
            now = utcnow()
            batch = Batch(
                id=str(uuid.uuid4()),
                batch_number=batch_number,
                manufacturer_id=manufacturer_pk,
                product_id=product_id,
                production_date=production_date,
                expiration_date=expiration_date,
                quantity=quantity,
                created_at=now,
            )
            codes = [
                Code(
                    value=value,
                    batch_id=batch.id,
                    manufacturer_id=manufacturer_pk,
                    used=False,
                    scan_count=0,
                    qr_image_ref=qr_image_ref(batch_number, value),
                    created_at=now,
                )
                for value in values
            ]
            await repo.add_batch(batch, codes)
            await db.commit()
        except DuplicateCodeError as exc:
            await db.rollback()
            logger.warning(
                "Code collision creating batch %s (attempt %d): %s",
                batch_number, attempt, exc,
            )
            continue

        logger.info(
            "Created batch %s with %d codes for manufacturer %s",
            batch.batch_number, len(codes), manufacturer_pk,
        )
        return batch, codes

    raise ScanGuardError(f"Could not allocate unique codes for batch {batch_number}")


async def mark_used(
    db: AsyncSession, code_value: str, now: datetime | None = None
) -> MarkUsedResult:
    """Idempotent first-use transition. Only one caller ever sees ``transitioned``."""
    now = now or utcnow()
    value = normalize_code_value(code_value)
    repo = CodeRepository(db)

    transitioned = await repo.mark_used(value, now)
    code = await repo.get_by_value(value)
    if code is None:
        raise NotFoundError("Code", value)
    return MarkUsedResult(code=code, transitioned=transitioned)


async def lookup(db: AsyncSession, code_value: str) -> CodeContext:
    value = normalize_code_value(code_value)
    repo = CodeRepository(db)
    code = await repo.get_by_value(value)
    if code is None:
        raise NotFoundError("Code", value)

    batch = await repo.get_batch(code.batch_id)
    product = await repo.get_product(batch.product_id) if batch else None
    manufacturer = await repo.get_manufacturer(code.manufacturer_id)
    return CodeContext(code=code, batch=batch, product=product, manufacturer=manufacturer)
