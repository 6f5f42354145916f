"""initial schema: job queue, events, handler result tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

LIVE = "state IN ('created', 'active', 'retrying')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # ── jobs ──
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_type", sa.String(64), nullable=False),
        sa.Column("state", sa.String(16), nullable=False, server_default="created"),
        sa.Column("payload", postgresql.JSONB, server_default="{}"),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(128), nullable=True),
        sa.Column("dedupe_key", sa.String(255), nullable=True),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("trace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.CheckConstraint(
            "state IN ('created', 'active', 'completed', 'retrying', 'failed', 'cancelled')",
            name="ck_jobs_state",
        ),
        *_timestamps(),
    )
    op.create_index(
        "uq_jobs_dedupe_key_live", "jobs", ["dedupe_key"], unique=True,
        postgresql_where=sa.text(LIVE),
    )
    op.create_index("ix_jobs_claim", "jobs", ["state", "scheduled_for"])
    op.create_index("ix_jobs_dedupe_key", "jobs", ["dedupe_key"])
    op.create_index(
        "ix_jobs_lease_expiry", "jobs", ["locked_until"],
        postgresql_where=sa.text("state = 'active'"),
    )

    # ── events ──
    op.create_table(
        "events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("level", sa.String(16), server_default="info"),
        sa.Column("source", sa.String(128), nullable=True),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_events_type", "events", ["event_type"])

    # ── damage_findings ──
    op.create_table(
        "damage_findings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("claim_id", sa.String(64), nullable=False, index=True),
        sa.Column("photo_url", sa.String(2048), nullable=False),
        sa.Column("finding_index", sa.Integer, nullable=False),
        sa.Column("damage_type", sa.String(64), nullable=False),
        sa.Column("severity", sa.String(16), server_default="medium"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("confidence", sa.Float, server_default="0"),
        sa.Column("location", postgresql.JSONB, nullable=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.UniqueConstraint("claim_id", "photo_url", "finding_index", name="uq_damage_findings_photo_index"),
        *_timestamps(),
    )

    # ── damage_reports ──
    op.create_table(
        "damage_reports",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("claim_id", sa.String(64), unique=True, nullable=False),
        sa.Column("total_photos", sa.Integer, server_default="0"),
        sa.Column("analyzed_photos", sa.Integer, server_default="0"),
        sa.Column("failed_photos", sa.Integer, server_default="0"),
        sa.Column("damage_types", postgresql.JSONB, server_default="[]"),
        sa.Column("highest_severity", sa.String(16), server_default="low"),
        sa.Column("overall_confidence", sa.Float, server_default="0"),
        sa.Column("captions", postgresql.JSONB, server_default="[]"),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
    )

    # ── weather_observations ──
    op.create_table(
        "weather_observations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("latitude", sa.Float, nullable=False),
        sa.Column("longitude", sa.Float, nullable=False),
        sa.Column("observed_on", sa.Date, nullable=False),
        sa.Column("max_wind_gust_kmh", sa.Float, nullable=True),
        sa.Column("precipitation_mm", sa.Float, nullable=True),
        sa.Column("max_temperature_c", sa.Float, nullable=True),
        sa.Column("weather_code", sa.Integer, nullable=True),
        sa.Column("hail_likely", sa.Boolean, server_default=sa.false()),
        sa.Column("source", sa.String(64), server_default="open-meteo"),
        sa.Column("raw", postgresql.JSONB, nullable=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.UniqueConstraint("latitude", "longitude", "observed_on", name="uq_weather_observations_point_day"),
        *_timestamps(),
    )

    # ── proposals ──
    op.create_table(
        "proposals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("proposal_id", sa.String(64), unique=True, nullable=False),
        sa.Column("claim_id", sa.String(64), nullable=True, index=True),
        sa.Column("document_path", sa.String(1024), nullable=False),
        sa.Column("subtotal", sa.Float, server_default="0"),
        sa.Column("tax", sa.Float, server_default="0"),
        sa.Column("total", sa.Float, server_default="0"),
        sa.Column("status", sa.String(32), server_default="ready"),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    for table in [
        "proposals", "weather_observations", "damage_reports",
        "damage_findings", "events", "jobs",
    ]:
        op.drop_table(table)
