# api/app/schemas/jobs.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EnqueueRequest(BaseModel):
    type: str = Field(min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime | None = None
    priority: int = 0
    dedupe_key: str | None = Field(default=None, max_length=255)
    max_attempts: int | None = Field(default=None, ge=1, le=50)


class EnqueueResponse(BaseModel):
    job_id: uuid.UUID


class JobStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_type: str
    state: str
    attempts: int
    max_attempts: int
    last_error: str | None = None
    result: Any = None
    scheduled_for: datetime
    cancel_requested: bool = False
    created_at: datetime
    updated_at: datetime


class CancelResponse(BaseModel):
    job_id: uuid.UUID
    cancelled: bool
    state: str
