from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.models.verification import VerificationLog


@dataclass(frozen=True)
class ProductLogCounts:
    total: int
    suspicious: int
    invalid: int
    already_used: int


class VerificationLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, log: VerificationLog) -> VerificationLog:
        self.session.add(log)
        await self.session.flush()
        return log

    async def count_for_code(self, code_value: str) -> int:
        result = await self.session.execute(
            select(func.count(VerificationLog.id)).where(VerificationLog.code_value == code_value)
        )
        return int(result.scalar() or 0)

    async def list_for_code_since(self, code_value: str, since: datetime) -> list[VerificationLog]:
        result = await self.session.execute(
            select(VerificationLog)
            .where(
                VerificationLog.code_value == code_value,
                VerificationLog.created_at >= since,
            )
            .order_by(VerificationLog.created_at.desc())
        )
        return list(result.scalars().all())

    async def product_counts(self, product_id: str) -> ProductLogCounts:
        """Aggregate counts feeding the product risk score.

        ``invalid`` covers scans that could not be tied to a registered
        product line (INVALID and UNREGISTERED_PRODUCT).
        """
        result = await self.session.execute(
            select(
                func.count(VerificationLog.id),
                func.sum(case((VerificationLog.suspicious.is_(True), 1), else_=0)),
                func.sum(
                    case(
                        (VerificationLog.state.in_(("INVALID", "UNREGISTERED_PRODUCT")), 1),
                        else_=0,
                    )
                ),
                func.sum(case((VerificationLog.state == "CODE_ALREADY_USED", 1), else_=0)),
            ).where(VerificationLog.product_id == product_id)
        )
        total, suspicious, invalid, used = result.one()
        return ProductLogCounts(
            total=int(total or 0),
            suspicious=int(suspicious or 0),
            invalid=int(invalid or 0),
            already_used=int(used or 0),
        )

    async def manufacturer_state_counts(
        self, manufacturer_id: str, since: datetime | None = None
    ) -> dict[str, int]:
        query = (
            select(VerificationLog.state, func.count(VerificationLog.id))
            .where(VerificationLog.manufacturer_id == manufacturer_id)
            .group_by(VerificationLog.state)
        )
        if since is not None:
            query = query.where(VerificationLog.created_at >= since)
        result = await self.session.execute(query)
        return {state: int(count) for state, count in result.all()}

    async def count_suspicious_since(self, manufacturer_id: str, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(VerificationLog.id)).where(
                VerificationLog.manufacturer_id == manufacturer_id,
                VerificationLog.suspicious.is_(True),
                VerificationLog.created_at >= since,
            )
        )
        return int(result.scalar() or 0)
