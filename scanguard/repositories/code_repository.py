"""Persistence for batches and codes.

The ``used`` flag is only ever changed through ``mark_used``, a single
conditional UPDATE, so two concurrent first scans cannot both win.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.core.exceptions import DuplicateCodeError
from scanguard.models.code import Batch, Code
from scanguard.models.manufacturer import Manufacturer, Product

# Keeps IN (...) lists well under SQLite's bound-parameter limit.
_LOOKUP_CHUNK = 500


class CodeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_value(self, value: str) -> Code | None:
        result = await self.session.execute(
            select(Code)
            .where(Code.value == value)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_batch(self, batch_id: str | None) -> Batch | None:
        if not batch_id:
            return None
        return await self.session.get(Batch, batch_id)

    async def get_product(self, product_id: str | None) -> Product | None:
        if not product_id:
            return None
        return await self.session.get(Product, product_id)

    async def get_manufacturer(self, manufacturer_id: str | None) -> Manufacturer | None:
        if not manufacturer_id:
            return None
        return await self.session.get(Manufacturer, manufacturer_id)

    async def existing_values(self, values: Iterable[str]) -> set[str]:
        """Return the subset of ``values`` already present in the registry."""
        pending = list(values)
        found: set[str] = set()
        for start in range(0, len(pending), _LOOKUP_CHUNK):
            chunk = pending[start:start + _LOOKUP_CHUNK]
            result = await self.session.execute(
                select(Code.value).where(Code.value.in_(chunk))
            )
            found.update(result.scalars().all())
        return found

    async def add_batch(self, batch: Batch, codes: list[Code]) -> None:
        """Stage a batch and its codes and flush them in one go.

        A unique-index violation surfaces as ``DuplicateCodeError``; the
        caller owns the rollback.
        """
        self.session.add(batch)
        await self.session.flush()
        self.session.add_all(codes)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise DuplicateCodeError(_duplicate_value(exc, codes)) from exc

    async def mark_used(self, value: str, now: datetime) -> bool:
        """Flip ``used`` false -> true. Returns True only for the winning caller."""
        result = await self.session.execute(
            update(Code)
            .where(Code.value == value, Code.used.is_(False))
            .values(
                used=True,
                used_at=now,
                first_verified_at=func.coalesce(Code.first_verified_at, now),
                scan_count=Code.scan_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def increment_scan_count(self, value: str) -> None:
        await self.session.execute(
            update(Code)
            .where(Code.value == value)
            .values(scan_count=Code.scan_count + 1)
            .execution_options(synchronize_session=False)
        )


def _duplicate_value(exc: IntegrityError, codes: list[Code]) -> str:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    for code in codes:
        if code.value in message:
            return code.value
    return "<unknown>"
