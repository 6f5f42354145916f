# jobs/worker.py
"""
Worker runtime: claims jobs, runs handlers concurrently, reports outcomes.

Many worker processes may run side by side; they coordinate only
through the jobs table.
"""
from __future__ import annotations

import asyncio
import logging
import platform
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.app.config import Settings, get_settings
from jobs.backoff import RetryPolicy
from jobs.outcomes import Ok, RetryableError
from jobs.queue import claim_next, complete_job, fail_job, get_job, heartbeat
from jobs.registry import JobRegistry
from models.base import utcnow
from models.job import Job, JobState
from services.observability import log_event

logger = logging.getLogger(__name__)


def make_worker_id() -> str:
    return f"worker-{platform.node()}-{uuid.uuid4().hex[:8]}"


class JobContext:
    """What a handler may do besides computing its result."""

    def __init__(
        self,
        job: Job,
        worker_id: str,
        session_factory: async_sessionmaker[AsyncSession],
        lease_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.job_id = job.id
        self.job_type = job.job_type
        self.attempt = job.attempts
        self.max_attempts = job.max_attempts
        self.trace_id = job.trace_id
        self.worker_id = worker_id
        self.lease_lost = False
        self._cancel_requested = bool(job.cancel_requested)
        self._session_factory = session_factory
        self._lease_seconds = lease_seconds
        self._clock = clock

    def session(self) -> AsyncSession:
        """A fresh session for domain writes. Use as `async with ctx.session() as db`."""
        return self._session_factory()

    async def heartbeat(self, extend_by: float | None = None) -> bool:
        """
        Push the lease out for long work. Returns False once the lease is
        lost; the handler should wrap up, its outcome will be ignored.
        """
        async with self._session_factory() as db:
            lease = await heartbeat(
                db,
                self.job_id,
                self.worker_id,
                extend_by or self._lease_seconds,
                attempt=self.attempt,
                now=self._clock(),
            )
            await db.commit()

        if lease is None:
            self.lease_lost = True
            return False
        self._cancel_requested = lease.cancel_requested
        return True

    async def is_cancelled(self) -> bool:
        """Best-effort check for a cancellation request on this job."""
        async with self._session_factory() as db:
            job = await get_job(db, self.job_id)
        self._cancel_requested = job is None or job.cancel_requested
        return self._cancel_requested

    @property
    def cancel_requested(self) -> bool:
        """Last known cancellation flag, refreshed by heartbeat() and is_cancelled()."""
        return self._cancel_requested


class Worker:
    def __init__(
        self,
        registry: JobRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        *,
        worker_id: str | None = None,
        job_types: list[str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.settings = settings or get_settings()
        self.worker_id = worker_id or make_worker_id()
        self.concurrency = max(1, self.settings.worker_concurrency)
        self.policy = RetryPolicy.from_settings(self.settings)
        self._job_types = job_types
        self._session_factory = session_factory
        self._clock = clock
        self._stopping = asyncio.Event()
        self._in_flight: set[asyncio.Task] = set()

    # ─────────────────────────────────────────────
    # single job
    # ─────────────────────────────────────────────
    async def claim(self, limit: int) -> list[Job]:
        async with self._session_factory() as db:
            jobs = await claim_next(
                db,
                self.worker_id,
                limit,
                self.settings.job_lease_seconds,
                job_types=self._job_types,
                now=self._clock(),
            )
            await db.commit()
        return jobs

    async def execute(self, job: Job) -> str | None:
        """
        Run one claimed job and record its outcome. Returns the job's new
        state, or None if another worker took the job over meanwhile.

        Handler failures are recorded, never raised. Store failures raise.
        """
        ctx = JobContext(
            job,
            self.worker_id,
            self._session_factory,
            self.settings.job_lease_seconds,
            self._clock,
        )
        outcome = await self.registry.dispatch(job.job_type, job.payload, ctx)

        async with self._session_factory() as db:
            if isinstance(outcome, Ok):
                done = await complete_job(
                    db,
                    job.id,
                    outcome.value,
                    worker_id=self.worker_id,
                    attempt=job.attempts,
                    now=self._clock(),
                )
                state = JobState.COMPLETED if done else None
            else:
                state = await fail_job(
                    db,
                    job.id,
                    outcome.reason,
                    worker_id=self.worker_id,
                    attempt=job.attempts,
                    retryable=isinstance(outcome, RetryableError),
                    policy=self.policy,
                    now=self._clock(),
                )
                if state is not None:
                    await log_event(
                        db,
                        "job_failed" if state == JobState.FAILED else "job_retrying",
                        "error" if state == JobState.FAILED else "warning",
                        source="worker",
                        message=outcome.reason[:500],
                        metadata={
                            "job_id": str(job.id),
                            "job_type": job.job_type,
                            "attempts": job.attempts,
                            "worker_id": self.worker_id,
                            "trace_id": str(job.trace_id),
                        },
                    )
            await db.commit()
        return state

    # ─────────────────────────────────────────────
    # loops
    # ─────────────────────────────────────────────
    async def run_once(self) -> int:
        """Claim one batch, run it to the end. Returns the number of jobs run."""
        jobs = await self.claim(self.concurrency)
        if jobs:
            await asyncio.gather(*(self.execute(job) for job in jobs))
        return len(jobs)

    async def run(self) -> None:
        logger.info(
            "Worker %s starting (concurrency=%d poll=%.1fs lease=%.0fs)",
            self.worker_id,
            self.concurrency,
            self.settings.worker_poll_interval,
            self.settings.job_lease_seconds,
        )
        try:
            while not self._stopping.is_set():
                claimed: list[Job] = []
                free = self.concurrency - len(self._in_flight)
                if free > 0:
                    claimed = await self.claim(free)
                    for job in claimed:
                        task = asyncio.create_task(self.execute(job), name=f"job-{job.id}")
                        self._in_flight.add(task)

                # a full batch hints at a backlog, claim again right away
                if claimed and len(claimed) == free:
                    await asyncio.sleep(0)
                    self._collect_finished()
                    continue

                await self._wait(self.settings.worker_poll_interval)
        finally:
            await self._drain()
            logger.info("Worker %s stopped", self.worker_id)

    def stop(self) -> None:
        """Stop claiming. In-flight jobs get the shutdown grace period."""
        if not self._stopping.is_set():
            logger.info("Worker %s stopping", self.worker_id)
            self._stopping.set()

    async def _wait(self, timeout: float) -> None:
        stop_waiter = asyncio.create_task(self._stopping.wait())
        try:
            await asyncio.wait(
                {stop_waiter, *self._in_flight},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_waiter.cancel()
        self._collect_finished()

    def _collect_finished(self) -> None:
        for task in [t for t in self._in_flight if t.done()]:
            self._in_flight.discard(task)
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                # only store failures get here; the loop cannot go on without the store
                logger.critical("Worker %s lost the job store: %s", self.worker_id, exc)
                raise exc

    async def _drain(self) -> None:
        if not self._in_flight:
            return
        grace = self.settings.worker_shutdown_grace
        logger.info("Waiting up to %.0fs for %d in-flight jobs", grace, len(self._in_flight))
        _, pending = await asyncio.wait(self._in_flight, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            # leases lapse and the reaper hands these to another worker
            logger.warning("Abandoned %d in-flight jobs", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        self._in_flight.clear()
