"""Background job wiring. Each run opens its own database session."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scanguard.config import settings
from scanguard.core.scheduler import Clock, Scheduler
from scanguard.database import async_session
from scanguard.services import (
    agency_rate_limit_service,
    escalation_service,
    reputation_service,
    risk_service,
    trust_score_service,
)

HOURLY_RESET = "rate-limit-hourly-reset"
DAILY_RESET = "rate-limit-daily-reset"
RISK_RECOMPUTE = "product-risk-recompute"
TRUST_RECOMPUTE = "trust-score-recompute"
REPUTATION_RECHECK = "website-reputation-recheck"
DEFERRED_REDELIVERY = "deferred-alert-redelivery"


def build_scheduler(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Clock | None = None,
) -> Scheduler:
    factory = session_factory or async_session
    scheduler = Scheduler(clock=clock) if clock else Scheduler()

    async def hourly_reset(now: datetime):
        async with factory() as db:
            return await agency_rate_limit_service.reset_expired_windows(
                db, now, daily_windows=False
            )

    async def daily_reset(now: datetime):
        async with factory() as db:
            return await agency_rate_limit_service.reset_expired_windows(
                db, now, hourly_windows=False
            )

    async def deferred_redelivery(now: datetime):
        async with factory() as db:
            return await escalation_service.redeliver_deferred_alerts(db, now=now)

    async def risk_recompute(now: datetime):
        async with factory() as db:
            return await risk_service.recalculate_all_product_risks(db, now=now)

    async def trust_recompute(now: datetime):
        async with factory() as db:
            return await trust_score_service.recalculate_all_trust_scores(db, now=now)

    async def reputation_recheck(now: datetime):
        async with factory() as db:
            return await reputation_service.recheck_all_websites(db, now=now)

    scheduler.register(
        HOURLY_RESET, hourly_reset,
        interval=timedelta(seconds=settings.rate_limit_reset_interval_seconds),
    )
    scheduler.register(DAILY_RESET, daily_reset, interval=timedelta(days=1))
    scheduler.register(
        DEFERRED_REDELIVERY, deferred_redelivery,
        interval=timedelta(seconds=settings.rate_limit_reset_interval_seconds),
    )
    scheduler.register(
        RISK_RECOMPUTE, risk_recompute,
        interval=timedelta(seconds=settings.risk_recompute_interval_seconds),
    )
    scheduler.register(
        TRUST_RECOMPUTE, trust_recompute,
        interval=timedelta(seconds=settings.trust_recompute_interval_seconds),
    )
    scheduler.register(
        REPUTATION_RECHECK, reputation_recheck,
        interval=timedelta(seconds=settings.reputation_recheck_interval_seconds),
    )
    return scheduler
