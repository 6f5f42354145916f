# models/proposal.py
from __future__ import annotations

import uuid

from sqlalchemy import Float, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin, UUIDPrimaryKey


class Proposal(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "proposals"

    proposal_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    claim_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    document_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    subtotal: Mapped[float] = mapped_column(Float, default=0.0)
    tax: Mapped[float] = mapped_column(Float, default=0.0)
    total: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(32), default="ready")
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
