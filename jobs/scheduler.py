# jobs/scheduler.py
"""
Recurring jobs and queue maintenance.

Each recurring series is kept alive by enqueueing the job for the next
period under a per-period dedupe key, so any number of processes can
tick concurrently (or restart) without scheduling a period twice.
The same tick runs the lease reaper and purges old finished jobs.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.app.config import Settings, get_settings
from jobs.queue import enqueue, purge_finished, reap_expired
from jobs.registry import JobRegistry
from models.base import utcnow
from models.job import Job

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class RecurringJob:
    job_type: str
    payload: dict = field(default_factory=dict)
    interval: timedelta = ONE_DAY
    dedupe_key: str = ""

    @property
    def series_key(self) -> str:
        return self.dedupe_key or self.job_type


def period_start(interval: timedelta, at: datetime) -> datetime:
    """Start of the interval-aligned period containing `at` (aligned to the Unix epoch)."""
    step = interval.total_seconds()
    elapsed = (at - EPOCH).total_seconds()
    return EPOCH + timedelta(seconds=(elapsed // step) * step)


def period_key(definition: RecurringJob, at: datetime) -> str:
    """Stable dedupe key for the period containing `at`, e.g. `weather-ingest:2026-10-19`."""
    start = period_start(definition.interval, at)
    if definition.interval % ONE_DAY == timedelta(0):
        label = start.date().isoformat()
    else:
        label = start.strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"{definition.series_key}:{label}"


async def _period_exists(db: AsyncSession, key: str) -> bool:
    """True if any job, in any state, was ever enqueued under this period key."""
    found = await db.execute(select(Job.id).where(Job.dedupe_key == key).limit(1))
    return found.scalar_one_or_none() is not None


class Scheduler:
    def __init__(
        self,
        registry: JobRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._clock = clock
        self._recurring: dict[str, RecurringJob] = {}

    @property
    def recurring(self) -> list[RecurringJob]:
        return list(self._recurring.values())

    def register_recurring(
        self,
        job_type: str,
        payload: dict | None = None,
        interval: timedelta = ONE_DAY,
        dedupe_key: str | None = None,
    ) -> RecurringJob:
        return self.add(RecurringJob(job_type, payload or {}, interval, dedupe_key or job_type))

    def add(self, definition: RecurringJob) -> RecurringJob:
        if definition.job_type not in self.registry:
            raise ValueError(f"No handler registered for recurring job type: {definition.job_type}")
        if definition.interval <= timedelta(0):
            raise ValueError(f"Recurring interval must be positive: {definition.interval}")

        existing = self._recurring.get(definition.series_key)
        if existing is not None:
            if existing != definition:
                raise ValueError(f"Conflicting recurring definition for {definition.series_key}")
            return existing

        self._recurring[definition.series_key] = definition
        logger.info(
            "Registered recurring %s every %s (key=%s)",
            definition.job_type,
            definition.interval,
            definition.series_key,
        )
        return definition

    async def tick(self, now: datetime | None = None) -> int:
        """
        Arm the next period of every series, requeue expired leases and
        purge old finished jobs. Returns the number of jobs reaped.
        """
        now = now or self._clock()
        async with self._session_factory() as db:
            for definition in self._recurring.values():
                next_start = period_start(definition.interval, now) + definition.interval
                key = period_key(definition, next_start)
                # a scheduler whose clock lags must not re-arm a period that already ran
                if await _period_exists(db, key):
                    continue
                await enqueue(
                    db,
                    definition.job_type,
                    definition.payload,
                    scheduled_for=next_start,
                    dedupe_key=key,
                    max_attempts=self.registry.max_attempts_for(
                        definition.job_type, self.settings.job_default_max_attempts
                    ),
                    now=now,
                )
            reaped = await reap_expired(db, now=now)
            await purge_finished(db, timedelta(days=self.settings.job_retention_days), now=now)
            await db.commit()
        return reaped


class SchedulerHandle:
    """Background tick loop; `await handle.stop()` ends it."""

    def __init__(self, scheduler: Scheduler, interval: float) -> None:
        self.scheduler = scheduler
        self.interval = interval
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="job-scheduler")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.scheduler.tick()
            except Exception as exc:
                logger.exception("Scheduler tick failed: %s", exc)

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None


async def start_scheduler(
    registry: JobRegistry,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    recurring: Iterable[RecurringJob] = (),
    *,
    clock: Callable[[], datetime] = utcnow,
) -> SchedulerHandle:
    """
    Register recurring series, run one tick right away and keep ticking
    every `reaper_interval` seconds in the background.
    """
    settings = settings or get_settings()
    scheduler = Scheduler(registry, session_factory, settings, clock=clock)
    for definition in recurring:
        scheduler.add(definition)

    await scheduler.tick()

    handle = SchedulerHandle(scheduler, settings.reaper_interval)
    handle.start()
    logger.info(
        "Scheduler started (%d recurring, every %.0fs)",
        len(scheduler.recurring),
        settings.reaper_interval,
    )
    return handle
