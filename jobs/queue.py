# jobs/queue.py
"""
Job store operations.

Every state transition is a single conditional statement so that
competing worker processes never both believe they own a job.
The caller owns the session and commits.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, case, delete, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from db.dialect import insert_for
from jobs.backoff import RetryPolicy
from jobs.errors import JobNotFound
from models.base import utcnow
from models.job import LIVE_PREDICATE, Job, JobState

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 8000


@dataclass(frozen=True)
class Lease:
    job_id: uuid.UUID
    locked_until: datetime
    cancel_requested: bool


def on_live_dedupe_conflict(stmt):
    """ON CONFLICT DO NOTHING against the live-only unique index on dedupe_key."""
    return stmt.on_conflict_do_nothing(
        index_elements=["dedupe_key"],
        index_where=LIVE_PREDICATE,
    )


async def enqueue(
    db: AsyncSession,
    job_type: str,
    payload: dict,
    *,
    scheduled_for: datetime | None = None,
    priority: int = 0,
    dedupe_key: str | None = None,
    max_attempts: int | None = None,
    now: datetime | None = None,
) -> uuid.UUID:
    """
    Insert a job and return its id.

    With a dedupe_key, an existing live job holding that key wins and
    its id is returned instead of inserting a duplicate.
    """
    now = now or utcnow()
    if max_attempts is None:
        max_attempts = get_settings().job_default_max_attempts

    # the live job may finish between the conflict and the lookup
    for _ in range(3):
        job_id = uuid.uuid4()
        stmt = insert_for(db, Job).values(
            id=job_id,
            job_type=job_type,
            payload=payload,
            state=JobState.CREATED,
            attempts=0,
            max_attempts=max_attempts,
            priority=priority,
            scheduled_for=scheduled_for or now,
            dedupe_key=dedupe_key,
            cancel_requested=False,
            trace_id=uuid.uuid4(),
            created_at=now,
            updated_at=now,
        )
        if dedupe_key is not None:
            stmt = on_live_dedupe_conflict(stmt)
        inserted = (await db.execute(stmt.returning(Job.id))).scalar_one_or_none()
        if inserted is not None:
            logger.info("Enqueued job %s [%s]", inserted, job_type)
            return inserted

        existing = (
            await db.execute(
                select(Job.id).where(
                    Job.dedupe_key == dedupe_key,
                    Job.state.in_(JobState.LIVE),
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info("Dedupe hit for key %s -> job %s [%s]", dedupe_key, existing, job_type)
            return existing

    raise RuntimeError(f"Could not enqueue {job_type} with dedupe key {dedupe_key!r}")


async def claim_next(
    db: AsyncSession,
    worker_id: str,
    batch_size: int,
    lease_seconds: float,
    *,
    job_types: list[str] | None = None,
    now: datetime | None = None,
) -> list[Job]:
    """
    Atomically claims up to batch_size eligible jobs for worker_id.

    Eligible: created/retrying, scheduled_for reached, no live lease.
    """
    if batch_size <= 0:
        return []

    now = now or utcnow()

    eligible = (
        select(Job.id)
        .where(
            Job.state.in_(JobState.CLAIMABLE),
            Job.scheduled_for <= now,
            or_(Job.locked_until.is_(None), Job.locked_until <= now),
        )
        .order_by(Job.priority.asc(), Job.created_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    if job_types:
        eligible = eligible.where(Job.job_type.in_(job_types))

    stmt = (
        update(Job)
        .where(Job.id.in_(eligible), Job.state.in_(JobState.CLAIMABLE))
        .values(
            state=JobState.ACTIVE,
            locked_by=worker_id,
            locked_until=now + timedelta(seconds=lease_seconds),
            attempts=Job.attempts + 1,
            updated_at=now,
        )
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    jobs = list((await db.execute(stmt)).scalars().all())
    jobs.sort(key=lambda j: (j.priority, j.created_at))

    for job in jobs:
        logger.info(
            "Worker %s claimed job %s [%s] attempt %d/%d trace=%s",
            worker_id,
            job.id,
            job.job_type,
            job.attempts,
            job.max_attempts,
            job.trace_id,
        )
    return jobs


def _owned_by(job_id: uuid.UUID, worker_id: str | None, attempt: int | None) -> list:
    conditions = [Job.id == job_id, Job.state == JobState.ACTIVE]
    if worker_id is not None:
        conditions.append(Job.locked_by == worker_id)
    if attempt is not None:
        conditions.append(Job.attempts == attempt)
    return conditions


async def complete_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    result: dict | None = None,
    *,
    worker_id: str | None = None,
    attempt: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Marks the job completed. Returns False if the lease was lost."""
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(*_owned_by(job_id, worker_id, attempt))
        .values(
            state=JobState.COMPLETED,
            result=result,
            locked_by=None,
            locked_until=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    if res.rowcount == 0:
        logger.warning("Job %s: complete ignored, lease no longer held by %s", job_id, worker_id)
        return False

    logger.info("Job %s completed", job_id)
    return True


async def fail_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    error: str,
    *,
    worker_id: str | None = None,
    attempt: int | None = None,
    retryable: bool = True,
    policy: RetryPolicy | None = None,
    now: datetime | None = None,
) -> str | None:
    """
    Schedules retry with backoff or marks permanently failed.
    No sleeping here.

    Returns the new state, or None if the lease was lost.
    """
    now = now or utcnow()
    policy = policy or RetryPolicy.from_settings(get_settings())
    error = error[:MAX_ERROR_CHARS]

    if attempt is None:
        # pin the current claim so a reclaim in between is not failed by mistake
        attempt = (
            await db.execute(select(Job.attempts).where(*_owned_by(job_id, worker_id, None)))
        ).scalar_one_or_none()
        if attempt is None:
            logger.warning("Job %s: fail ignored, lease no longer held by %s", job_id, worker_id)
            return None

    if retryable:
        retry = and_(Job.attempts < Job.max_attempts, Job.cancel_requested.is_(False))
        retry_at = literal(now + timedelta(seconds=policy.delay(attempt)), Job.scheduled_for.type)
        values = dict(
            state=case((retry, JobState.RETRYING), else_=JobState.FAILED),
            scheduled_for=case((retry, retry_at), else_=Job.scheduled_for),
        )
    else:
        values = dict(state=JobState.FAILED)

    stmt = (
        update(Job)
        .where(*_owned_by(job_id, worker_id, attempt))
        .values(
            **values,
            last_error=error,
            locked_by=None,
            locked_until=None,
            updated_at=now,
        )
        .returning(Job.state, Job.scheduled_for, Job.max_attempts, Job.cancel_requested, Job.trace_id)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).one_or_none()
    if row is None:
        logger.warning("Job %s: fail ignored, lease no longer held by %s", job_id, worker_id)
        return None

    if row.state == JobState.RETRYING:
        logger.warning(
            "Job %s retry %d/%d at %s trace=%s",
            job_id,
            attempt,
            row.max_attempts,
            row.scheduled_for,
            row.trace_id,
        )
    else:
        logger.error(
            "Job %s permanently failed after %d attempts (retryable=%s cancel_requested=%s) trace=%s",
            job_id,
            attempt,
            retryable,
            row.cancel_requested,
            row.trace_id,
        )
    return row.state


async def heartbeat(
    db: AsyncSession,
    job_id: uuid.UUID,
    worker_id: str,
    extend_by: float,
    *,
    attempt: int | None = None,
    now: datetime | None = None,
) -> Lease | None:
    """
    Extends the lease of a job this worker still holds.

    A mismatch means the job was reclaimed; that is expected after a
    lease expiry and only logged.
    """
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(*_owned_by(job_id, worker_id, attempt))
        .values(locked_until=now + timedelta(seconds=extend_by), updated_at=now)
        .returning(Job.locked_until, Job.cancel_requested)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).one_or_none()
    if row is None:
        logger.warning("Job %s: heartbeat from %s rejected, lease lost", job_id, worker_id)
        return None
    return Lease(job_id=job_id, locked_until=row.locked_until, cancel_requested=row.cancel_requested)


async def cancel_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> bool:
    """
    Cancels a job that has not started (created/retrying).

    For an active job only a cancellation request is recorded; the
    handler sees it through its context and the job will not be retried.
    """
    now = now or utcnow()
    res = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.state.in_(JobState.CLAIMABLE))
        .values(
            state=JobState.CANCELLED,
            locked_by=None,
            locked_until=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        logger.info("Job %s cancelled", job_id)
        return True

    res = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.state == JobState.ACTIVE)
        .values(cancel_requested=True, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        logger.info("Job %s is active, cancellation requested", job_id)
        return False

    if await get_job(db, job_id) is None:
        raise JobNotFound(job_id)
    return False


async def get_job(db: AsyncSession, job_id: uuid.UUID) -> Job | None:
    return await db.get(Job, job_id, populate_existing=True)


async def reap_expired(db: AsyncSession, *, now: datetime | None = None) -> int:
    """
    Requeues active jobs whose lease ran out (the worker died).
    Jobs with no attempts left, or with a pending cancellation, fail.
    """
    now = now or utcnow()
    stmt = (
        update(Job)
        .where(Job.state == JobState.ACTIVE, Job.locked_until < now)
        .values(
            state=case(
                (
                    or_(Job.attempts >= Job.max_attempts, Job.cancel_requested.is_(True)),
                    JobState.FAILED,
                ),
                else_=JobState.RETRYING,
            ),
            scheduled_for=now,
            locked_by=None,
            locked_until=None,
            last_error="lease expired before the worker reported an outcome",
            updated_at=now,
        )
        .returning(Job.id, Job.state)
        .execution_options(synchronize_session=False)
    )
    rows = (await db.execute(stmt)).all()
    for row in rows:
        logger.warning("Reaped job %s with expired lease -> %s", row.id, row.state)
    return len(rows)


async def purge_finished(
    db: AsyncSession,
    older_than: timedelta,
    *,
    now: datetime | None = None,
) -> int:
    """Deletes terminal jobs last touched before now - older_than."""
    now = now or utcnow()
    res = await db.execute(
        delete(Job)
        .where(Job.state.in_(JobState.TERMINAL), Job.updated_at < now - older_than)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount:
        logger.info("Purged %d finished jobs", res.rowcount)
    return res.rowcount
