"""Interval scheduler for recomputation and reset jobs.

Jobs are registered once with a fixed interval and run from a single loop
task. ``run_due`` evaluates the registry against an explicit ``now`` so jobs
can be exercised in tests without waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from scanguard.core.clock import utcnow

logger = logging.getLogger(__name__)

JobFunc = Callable[[datetime], Awaitable[Any]]
Clock = Callable[[], datetime]


@dataclass
class ScheduledJob:
    name: str
    interval: timedelta
    func: JobFunc
    next_run_at: datetime
    last_run_at: datetime | None = None
    last_error: str | None = None
    run_count: int = 0
    failure_count: int = 0

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_run_at


@dataclass
class JobRun:
    name: str
    ok: bool
    result: Any = None
    error: str | None = None


@dataclass
class Scheduler:
    clock: Clock = utcnow
    tick_seconds: float = 30.0
    _jobs: dict[str, ScheduledJob] = field(default_factory=dict)
    _task: asyncio.Task | None = None
    _stop: asyncio.Event | None = None

    def register(
        self,
        name: str,
        func: JobFunc,
        *,
        interval: timedelta,
        first_run_at: datetime | None = None,
    ) -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"Job '{name}' is already registered")
        if interval <= timedelta(0):
            raise ValueError("Job interval must be positive")
        job = ScheduledJob(
            name=name,
            interval=interval,
            func=func,
            next_run_at=first_run_at or (self.clock() + interval),
        )
        self._jobs[name] = job
        return job

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)

    async def run_job(self, name: str, now: datetime | None = None) -> JobRun:
        """Run one job immediately and advance its next run time."""
        job = self._jobs[name]
        now = now or self.clock()
        job.last_run_at = now
        job.next_run_at = now + job.interval
        job.run_count += 1
        try:
            result = await job.func(now)
        except Exception as exc:
            job.failure_count += 1
            job.last_error = str(exc)
            logger.exception("Scheduled job %s failed", name)
            return JobRun(name=name, ok=False, error=str(exc))
        job.last_error = None
        return JobRun(name=name, ok=True, result=result)

    async def run_due(self, now: datetime | None = None) -> list[JobRun]:
        now = now or self.clock()
        runs = []
        for job in list(self._jobs.values()):
            if job.is_due(now):
                runs.append(await self.run_job(job.name, now))
        return runs

    async def _loop(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            await self.run_due()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="scanguard-scheduler")
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    async def shutdown(self, timeout_seconds: float = 5.0) -> None:
        if self._task is None:
            return
        assert self._stop is not None
        self._stop.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout_seconds)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Scheduler stopped")
