"""Per-agency alert counters, mutated only through conditional UPDATEs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.core.clock import next_hour_boundary, next_midnight
from scanguard.models.regulatory import AgencyRateLimit


class RateLimitRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, agency: str) -> AgencyRateLimit | None:
        result = await self.session.execute(
            select(AgencyRateLimit)
            .where(AgencyRateLimit.agency == agency)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(
        self, agency: str, *, per_hour: int, per_day: int, now: datetime
    ) -> AgencyRateLimit:
        row = AgencyRateLimit(
            agency=agency,
            alerts_per_hour=per_hour,
            alerts_per_day=per_day,
            current_hour_count=0,
            current_day_count=0,
            is_throttled=False,
            hourly_reset_at=next_hour_boundary(now),
            daily_reset_at=next_midnight(now),
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def reset_hourly(self, now: datetime, agency: str | None = None) -> int:
        stmt = (
            update(AgencyRateLimit)
            .where(AgencyRateLimit.hourly_reset_at <= now)
            .values(
                current_hour_count=0,
                is_throttled=False,
                hourly_reset_at=next_hour_boundary(now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if agency is not None:
            stmt = stmt.where(AgencyRateLimit.agency == agency)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def reset_daily(self, now: datetime, agency: str | None = None) -> int:
        stmt = (
            update(AgencyRateLimit)
            .where(AgencyRateLimit.daily_reset_at <= now)
            .values(
                current_day_count=0,
                is_throttled=False,
                daily_reset_at=next_midnight(now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if agency is not None:
            stmt = stmt.where(AgencyRateLimit.agency == agency)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def try_increment(self, agency: str, now: datetime) -> bool:
        """Take one slot if both windows have room. True when the slot was taken."""
        result = await self.session.execute(
            update(AgencyRateLimit)
            .where(
                AgencyRateLimit.agency == agency,
                AgencyRateLimit.current_hour_count < AgencyRateLimit.alerts_per_hour,
                AgencyRateLimit.current_day_count < AgencyRateLimit.alerts_per_day,
            )
            .values(
                current_hour_count=AgencyRateLimit.current_hour_count + 1,
                current_day_count=AgencyRateLimit.current_day_count + 1,
                is_throttled=False,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_throttled(self, agency: str, now: datetime) -> None:
        await self.session.execute(
            update(AgencyRateLimit)
            .where(AgencyRateLimit.agency == agency)
            .values(is_throttled=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def decrement(
        self,
        agency: str,
        now: datetime,
        *,
        hourly_reset_at: datetime,
        daily_reset_at: datetime,
    ) -> tuple[int, int]:
        """Hand back one slot, but only to the windows it was taken from.

        A window that has rolled over since the reservation has a different
        reset time and is left alone. Returns rows touched (hourly, daily).
        """
        hourly = await self.session.execute(
            update(AgencyRateLimit)
            .where(
                AgencyRateLimit.agency == agency,
                AgencyRateLimit.hourly_reset_at == hourly_reset_at,
            )
            .values(
                current_hour_count=case(
                    (AgencyRateLimit.current_hour_count > 0, AgencyRateLimit.current_hour_count - 1),
                    else_=0,
                ),
                is_throttled=False,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        daily = await self.session.execute(
            update(AgencyRateLimit)
            .where(
                AgencyRateLimit.agency == agency,
                AgencyRateLimit.daily_reset_at == daily_reset_at,
            )
            .values(
                current_day_count=case(
                    (AgencyRateLimit.current_day_count > 0, AgencyRateLimit.current_day_count - 1),
                    else_=0,
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return hourly.rowcount or 0, daily.rowcount or 0

    async def set_limits(self, agency: str, per_hour: int, per_day: int, now: datetime) -> None:
        await self.session.execute(
            update(AgencyRateLimit)
            .where(AgencyRateLimit.agency == agency)
            .values(alerts_per_hour=per_hour, alerts_per_day=per_day, updated_at=now)
            .execution_options(synchronize_session=False)
        )
