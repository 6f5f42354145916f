# api/app/routes/jobs.py
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from api.app.dependencies import get_registry, get_session
from api.app.schemas.jobs import CancelResponse, EnqueueRequest, EnqueueResponse, JobStatus
from jobs.errors import JobNotFound
from jobs.queue import cancel_job, enqueue, get_job
from jobs.registry import JobRegistry
from models.job import JobState

router = APIRouter(tags=["jobs"])


@router.post("/jobs", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    body: EnqueueRequest,
    db: AsyncSession = Depends(get_session),
    registry: JobRegistry = Depends(get_registry),
):
    """Enqueue a job. The payload is validated by the worker, not here."""
    max_attempts = body.max_attempts or registry.max_attempts_for(
        body.type, get_settings().job_default_max_attempts
    )

    job_id = await enqueue(
        db,
        body.type,
        body.payload,
        scheduled_for=body.scheduled_for,
        priority=body.priority,
        dedupe_key=body.dedupe_key,
        max_attempts=max_attempts,
    )
    await db.commit()
    return EnqueueResponse(job_id=job_id)


@router.get("/jobs/{job_id}", response_model=JobStatus)
async def read_job(job_id: uuid.UUID, db: AsyncSession = Depends(get_session)):
    job = await get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatus.model_validate(job)


@router.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel(job_id: uuid.UUID, db: AsyncSession = Depends(get_session)):
    try:
        cancelled = await cancel_job(db, job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    await db.commit()

    job = await get_job(db, job_id)
    return CancelResponse(job_id=job_id, cancelled=cancelled, state=job.state)


@router.post("/jobs/{job_id}/retry", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry(job_id: uuid.UUID, db: AsyncSession = Depends(get_session)):
    """Re-enqueue a failed or cancelled job as a fresh job. The old row is left as is."""
    job = await get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.state not in (JobState.FAILED, JobState.CANCELLED):
        raise HTTPException(status_code=409, detail=f"Job is {job.state}, only failed or cancelled jobs can be retried")

    new_id = await enqueue(
        db,
        job.job_type,
        job.payload,
        priority=job.priority,
        dedupe_key=job.dedupe_key,
        max_attempts=job.max_attempts,
    )
    await db.commit()
    return EnqueueResponse(job_id=new_id)
