"""Per-agency hourly/daily caps on outbound regulatory alerts.

A slot is reserved with ``check_and_increment`` before delivery and handed
back with ``release`` when every attempt failed, so only alerts that reached
the agency stay counted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from scanguard.config import settings
from scanguard.core.clock import as_utc, utcnow
from scanguard.core.exceptions import NotFoundError, ValidationError
from scanguard.models.regulatory import AgencyRateLimit
from scanguard.repositories.rate_limit_repository import RateLimitRepository
from scanguard.services.regulatory_routing import KNOWN_AGENCIES

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    agency: str
    hourly_count: int
    daily_count: int
    hourly_limit: int
    daily_limit: int
    hourly_reset_at: datetime
    daily_reset_at: datetime


def _decision(row: AgencyRateLimit, allowed: bool) -> RateLimitDecision:
    return RateLimitDecision(
        allowed=allowed,
        agency=row.agency,
        hourly_count=row.current_hour_count,
        daily_count=row.current_day_count,
        hourly_limit=row.alerts_per_hour,
        daily_limit=row.alerts_per_day,
        hourly_reset_at=as_utc(row.hourly_reset_at),
        daily_reset_at=as_utc(row.daily_reset_at),
    )


async def ensure_agency(
    db: AsyncSession,
    agency: str,
    *,
    now: datetime | None = None,
    per_hour: int | None = None,
    per_day: int | None = None,
) -> AgencyRateLimit:
    """Return the agency's row, creating it with default caps on first use."""
    now = now or utcnow()
    repo = RateLimitRepository(db)
    row = await repo.get(agency)
    if row is not None:
        return row
    try:
        row = await repo.create(
            agency,
            per_hour=per_hour or settings.agency_default_alerts_per_hour,
            per_day=per_day or settings.agency_default_alerts_per_day,
            now=now,
        )
        await db.commit()
    except IntegrityError:
        # Another caller created it first.
        await db.rollback()
        row = await repo.get(agency)
    return row


async def initialize_agencies(db: AsyncSession, now: datetime | None = None) -> list[str]:
    """Make sure every known agency has a rate-limit row. Returns the ones created."""
    repo = RateLimitRepository(db)
    created = []
    for agency in KNOWN_AGENCIES:
        if await repo.get(agency) is None:
            await ensure_agency(db, agency, now=now)
            created.append(agency)
    if created:
        logger.info("Initialized rate limits for agencies: %s", ", ".join(created))
    return created


async def check_and_increment(
    db: AsyncSession, agency: str, now: datetime | None = None
) -> RateLimitDecision:
    """Atomically reserve one alert slot for ``agency`` if both windows allow it."""
    now = now or utcnow()
    repo = RateLimitRepository(db)
    await ensure_agency(db, agency, now=now)

    await repo.reset_hourly(now, agency)
    await repo.reset_daily(now, agency)
    allowed = await repo.try_increment(agency, now)
    if not allowed:
        await repo.mark_throttled(agency, now)
    await db.commit()

    row = await repo.get(agency)
    decision = _decision(row, allowed)
    if not allowed:
        logger.warning(
            "Agency %s throttled (hour %d/%d, day %d/%d)",
            agency,
            decision.hourly_count, decision.hourly_limit,
            decision.daily_count, decision.daily_limit,
        )
    return decision


async def release(
    db: AsyncSession, reservation: RateLimitDecision, now: datetime | None = None
) -> None:
    """Give back a slot reserved by ``check_and_increment``. Counters never go negative.

    Only the windows the slot was reserved in are decremented. When a retry
    chain outlives the hour, the new hour's counter is not touched.
    """
    repo = RateLimitRepository(db)
    hourly, daily = await repo.decrement(
        reservation.agency,
        now or utcnow(),
        hourly_reset_at=reservation.hourly_reset_at,
        daily_reset_at=reservation.daily_reset_at,
    )
    await db.commit()
    if not hourly:
        logger.debug("Hourly window for %s rolled over; slot not returned", reservation.agency)
    if not daily:
        logger.debug("Daily window for %s rolled over; slot not returned", reservation.agency)


async def reset_expired_windows(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    hourly_windows: bool = True,
    daily_windows: bool = True,
) -> dict:
    """Zero every agency window whose reset time has passed."""
    now = now or utcnow()
    repo = RateLimitRepository(db)
    hourly = await repo.reset_hourly(now) if hourly_windows else 0
    daily = await repo.reset_daily(now) if daily_windows else 0
    await db.commit()
    if hourly or daily:
        logger.info("Reset rate-limit windows: %d hourly, %d daily", hourly, daily)
    return {"hourly_reset": hourly, "daily_reset": daily}


async def get_status(db: AsyncSession, agency: str) -> RateLimitDecision:
    row = await RateLimitRepository(db).get(agency)
    if row is None:
        raise NotFoundError("Agency", agency)
    allowed = (
        row.current_hour_count < row.alerts_per_hour
        and row.current_day_count < row.alerts_per_day
    )
    return _decision(row, allowed)


async def update_limits(
    db: AsyncSession,
    agency: str,
    per_hour: int,
    per_day: int,
    now: datetime | None = None,
) -> RateLimitDecision:
    if per_hour <= 0 or per_day <= 0:
        raise ValidationError("rate limits must be positive")
    if per_hour > per_day:
        raise ValidationError("alerts_per_hour cannot exceed alerts_per_day")
    now = now or utcnow()
    await ensure_agency(db, agency, now=now, per_hour=per_hour, per_day=per_day)
    repo = RateLimitRepository(db)
    await repo.set_limits(agency, per_hour, per_day, now)
    await db.commit()
    logger.info("Rate limits for %s set to %d/hour, %d/day", agency, per_hour, per_day)
    return await get_status(db, agency)
