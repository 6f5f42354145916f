# models/damage.py
from __future__ import annotations

import uuid

from sqlalchemy import Float, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKey


class DamageFinding(Base, UUIDPrimaryKey, TimestampMixin):
    """One damage finding on one photo. Keyed by (claim, photo, index) so reruns overwrite."""

    __tablename__ = "damage_findings"
    __table_args__ = (
        UniqueConstraint("claim_id", "photo_url", "finding_index", name="uq_damage_findings_photo_index"),
    )

    claim_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    photo_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    finding_index: Mapped[int] = mapped_column(Integer, nullable=False)

    damage_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), default="medium")  # low | medium | high | critical
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    location: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # job that last wrote this row
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)


class DamageReport(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "damage_reports"

    claim_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    total_photos: Mapped[int] = mapped_column(Integer, default=0)
    analyzed_photos: Mapped[int] = mapped_column(Integer, default=0)
    failed_photos: Mapped[int] = mapped_column(Integer, default=0)
    damage_types: Mapped[list] = mapped_column(JSONType, default=list)
    highest_severity: Mapped[str] = mapped_column(String(16), default="low")
    overall_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    captions: Mapped[list] = mapped_column(JSONType, default=list)
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
