"""Tests for the interval scheduler and the registered background jobs."""

from datetime import timedelta

import pytest

from scanguard import jobs
from scanguard.core.clock import utcnow
from scanguard.core.scheduler import Scheduler
from scanguard.services import agency_rate_limit_service


def _fixed_clock(now):
    return lambda: now


async def test_job_runs_only_when_due(fixed_now):
    calls = []

    async def _job(now):
        calls.append(now)
        return "done"

    scheduler = Scheduler(clock=_fixed_clock(fixed_now))
    scheduler.register("tick", _job, interval=timedelta(minutes=10))

    assert await scheduler.run_due(fixed_now + timedelta(minutes=5)) == []
    runs = await scheduler.run_due(fixed_now + timedelta(minutes=10))
    assert [(r.name, r.ok, r.result) for r in runs] == [("tick", True, "done")]
    assert calls == [fixed_now + timedelta(minutes=10)]
    assert scheduler.jobs["tick"].next_run_at == fixed_now + timedelta(minutes=20)


async def test_failing_job_does_not_stop_others(fixed_now):
    async def _broken(now):
        raise RuntimeError("database unavailable")

    async def _healthy(now):
        return 1

    scheduler = Scheduler(clock=_fixed_clock(fixed_now))
    scheduler.register("broken", _broken, interval=timedelta(minutes=1), first_run_at=fixed_now)
    scheduler.register("healthy", _healthy, interval=timedelta(minutes=1), first_run_at=fixed_now)

    runs = await scheduler.run_due(fixed_now)
    assert {r.name: r.ok for r in runs} == {"broken": False, "healthy": True}
    assert scheduler.jobs["broken"].failure_count == 1
    assert scheduler.jobs["broken"].last_error == "database unavailable"
    # The failed job is rescheduled like any other.
    assert scheduler.jobs["broken"].next_run_at == fixed_now + timedelta(minutes=1)


def test_register_rejects_duplicates_and_bad_intervals(fixed_now):
    async def _job(now):
        return None

    scheduler = Scheduler(clock=_fixed_clock(fixed_now))
    scheduler.register("once", _job, interval=timedelta(hours=1))
    with pytest.raises(ValueError):
        scheduler.register("once", _job, interval=timedelta(hours=1))
    with pytest.raises(ValueError):
        scheduler.register("zero", _job, interval=timedelta(0))


async def test_start_and_shutdown(fixed_now):
    scheduler = Scheduler(clock=_fixed_clock(fixed_now), tick_seconds=0.01)
    scheduler.start()
    await scheduler.shutdown(timeout_seconds=1.0)
    assert scheduler._task is None


def test_build_scheduler_registers_all_jobs(session_factory, fixed_now):
    scheduler = jobs.build_scheduler(session_factory, clock=_fixed_clock(fixed_now))
    assert set(scheduler.jobs) == {
        jobs.HOURLY_RESET,
        jobs.DAILY_RESET,
        jobs.RISK_RECOMPUTE,
        jobs.TRUST_RECOMPUTE,
        jobs.REPUTATION_RECHECK,
        jobs.DEFERRED_REDELIVERY,
    }
    assert scheduler.jobs[jobs.HOURLY_RESET].next_run_at == fixed_now + timedelta(hours=1)


async def test_hourly_reset_job_zeroes_counters(db, session_factory, fixed_now):
    await agency_rate_limit_service.initialize_agencies(db, now=fixed_now)
    await agency_rate_limit_service.check_and_increment(db, "NAFDAC", now=fixed_now)

    scheduler = jobs.build_scheduler(session_factory, clock=_fixed_clock(fixed_now))
    run = await scheduler.run_job(jobs.HOURLY_RESET, fixed_now + timedelta(hours=1))

    assert run.ok is True
    assert run.result == {"hourly_reset": 3, "daily_reset": 0}
    status = await agency_rate_limit_service.get_status(db, "NAFDAC")
    assert status.hourly_count == 0
    assert status.daily_count == 1


async def test_recompute_jobs_run_with_own_sessions(make_batch, session_factory, fixed_now):
    await make_batch(quantity=2)
    scheduler = jobs.build_scheduler(session_factory, clock=_fixed_clock(fixed_now))

    trust = await scheduler.run_job(jobs.TRUST_RECOMPUTE, fixed_now)
    risk = await scheduler.run_job(jobs.RISK_RECOMPUTE, fixed_now)
    reputation = await scheduler.run_job(jobs.REPUTATION_RECHECK, fixed_now)

    assert trust.result == {"processed": 1, "failed": 0}
    assert risk.result == {"processed": 1, "failed": 0, "alerts": 0}
    assert reputation.result["checked"] == 0


async def test_redelivery_job_with_nothing_deferred(session_factory, fixed_now):
    scheduler = jobs.build_scheduler(session_factory, clock=_fixed_clock(fixed_now))
    run = await scheduler.run_job(jobs.DEFERRED_REDELIVERY, fixed_now)
    assert run.ok is True
    assert run.result == {"attempted": 0, "sent": 0, "deferred": 0, "failed": 0}


def test_default_clock_is_shared_utc_clock():
    assert Scheduler().clock is utcnow
    assert Scheduler().clock().tzinfo is not None
