# models/job.py
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKey, utcnow


class JobState:
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"

    # states a worker may claim from
    CLAIMABLE = (CREATED, RETRYING)
    LIVE = (CREATED, ACTIVE, RETRYING)
    TERMINAL = (COMPLETED, FAILED, CANCELLED)


# literal so ON CONFLICT can match the partial index under prepared statements
LIVE_PREDICATE = text("state IN ('created', 'active', 'retrying')")


class Job(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "jobs"
    __table_args__ = (
        # dedupe_key is unique among live jobs only; finished jobs free the key
        Index(
            "uq_jobs_dedupe_key_live",
            "dedupe_key",
            unique=True,
            postgresql_where=LIVE_PREDICATE,
            sqlite_where=LIVE_PREDICATE,
        ),
        Index("ix_jobs_claim", "state", "scheduled_for"),
        # any-state lookup for recurring periods that already ran
        Index("ix_jobs_dedupe_key", "dedupe_key"),
        Index(
            "ix_jobs_lease_expiry",
            "locked_until",
            postgresql_where=text("state = 'active'"),
            sqlite_where=text("state = 'active'"),
        ),
    )

    job_type: Mapped[str] = mapped_column(String(64), nullable=False)

    # created | active | completed | retrying | failed | cancelled
    state: Mapped[str] = mapped_column(String(16), default=JobState.CREATED, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    dedupe_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trace_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), default=uuid.uuid4, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in JobState.TERMINAL
