# jobs/handlers.py
"""
Job handlers for each job type.
Hardened for:
- at-least-once delivery (deterministic keys + upserts)
- short DB transactions (no session held across network calls)
- lease heartbeats on long work
- cooperative cancellation
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, timedelta

from pydantic import BaseModel, Field
from sqlalchemy import delete

from api.app.config import Settings, get_settings
from db.dialect import upsert
from jobs.errors import JobError
from jobs.outcomes import Ok, Outcome, PermanentError, RetryableError
from jobs.registry import JobRegistry
from jobs.scheduler import ONE_DAY, RecurringJob
from jobs.worker import JobContext
from models.base import utcnow
from models.damage import DamageFinding, DamageReport
from models.proposal import Proposal
from models.weather import WeatherObservation
from services.documents import LineItem, proposal_totals, render_proposal_html, write_document
from services.vision import SEVERITIES, PhotoAnalysis, analyze_photo
from services.weather import fetch_daily_weather

logger = logging.getLogger(__name__)

ECHO = "echo"
DAMAGE_ANALYZE = "damage-analyze"
WEATHER_INGEST = "weather-ingest"
PROPOSAL_GENERATE = "proposal-generate"

MAX_PHOTOS = 20

# ─────────────────────────────────────────────
# payloads
# ─────────────────────────────────────────────


class EchoPayload(BaseModel):
    message: str


class DamageAnalyzePayload(BaseModel):
    claim_id: str = Field(min_length=1, max_length=64)
    photo_urls: list[str] = Field(min_length=1, max_length=MAX_PHOTOS)
    max_concurrent: int = Field(default=3, ge=1, le=10)


class WeatherIngestPayload(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    # defaults to the day before the job runs
    observed_on: date | None = None


class ProposalGeneratePayload(BaseModel):
    proposal_id: str = Field(min_length=1, max_length=64)
    claim_id: str | None = None
    customer_name: str
    address: str = ""
    line_items: list[LineItem] = Field(min_length=1)
    tax_rate: float = Field(default=0.0, ge=0, le=1)


# ─────────────────────────────────────────────
# echo
# ─────────────────────────────────────────────


async def handle_echo(payload: EchoPayload, ctx: JobContext) -> Outcome:
    return Ok({"echoed": payload.message})


# ─────────────────────────────────────────────
# damage analysis
# ─────────────────────────────────────────────


def summarize_damage(results: dict[str, PhotoAnalysis], total_photos: int) -> dict:
    damages = [d for analysis in results.values() for d in analysis.damages]
    damage_types = list(dict.fromkeys(d.damage_type for d in damages))
    confidence = sum(d.confidence for d in damages) / len(damages) if damages else 0.0

    highest = "low"
    for d in damages:
        if d.severity in SEVERITIES and SEVERITIES.index(d.severity) > SEVERITIES.index(highest):
            highest = d.severity

    return {
        "total_photos": total_photos,
        "analyzed_photos": len(results),
        "failed_photos": total_photos - len(results),
        "damage_types": damage_types,
        "highest_severity": highest,
        "overall_confidence": round(confidence, 2),
        "findings": len(damages),
    }


async def handle_damage_analyze(payload: DamageAnalyzePayload, ctx: JobContext) -> Outcome:
    urls = list(dict.fromkeys(payload.photo_urls))
    results: dict[str, PhotoAnalysis] = {}
    errors: dict[str, Exception] = {}

    logger.info("trace=%s analyzing %d photos for claim %s", ctx.trace_id, len(urls), payload.claim_id)

    # chunked to stay under the provider's rate limit
    for start in range(0, len(urls), payload.max_concurrent):
        chunk = urls[start:start + payload.max_concurrent]
        analyses = await asyncio.gather(*(analyze_photo(url) for url in chunk), return_exceptions=True)
        for url, analysis in zip(chunk, analyses):
            if isinstance(analysis, Exception):
                logger.warning("trace=%s photo %s failed: %s", ctx.trace_id, url, analysis)
                errors[url] = analysis
            elif isinstance(analysis, BaseException):
                raise analysis
            else:
                results[url] = analysis

        if not await ctx.heartbeat():
            return RetryableError("lease lost during damage analysis")
        if ctx.cancel_requested:
            return PermanentError("cancelled during damage analysis")

    if not results:
        first = next(iter(errors.values()))
        if all(isinstance(e, JobError) and not e.retryable for e in errors.values()):
            return PermanentError(f"all {len(urls)} photos failed: {first}")
        return RetryableError(f"all {len(urls)} photos failed: {first}")

    summary = summarize_damage(results, len(urls))
    now = utcnow()

    async with ctx.session() as db:
        for url, analysis in results.items():
            for index, damage in enumerate(analysis.damages):
                await upsert(
                    db,
                    DamageFinding,
                    {
                        "id": uuid.uuid4(),
                        "claim_id": payload.claim_id,
                        "photo_url": url,
                        "finding_index": index,
                        "damage_type": damage.damage_type,
                        "severity": damage.severity,
                        "description": damage.description,
                        "confidence": damage.confidence,
                        "location": damage.location.model_dump() if damage.location else None,
                        "job_id": ctx.job_id,
                        "updated_at": now,
                    },
                    ["claim_id", "photo_url", "finding_index"],
                )
            # a rerun that finds fewer damages must not leave the old extras behind
            await db.execute(
                delete(DamageFinding).where(
                    DamageFinding.claim_id == payload.claim_id,
                    DamageFinding.photo_url == url,
                    DamageFinding.finding_index >= len(analysis.damages),
                )
            )

        await upsert(
            db,
            DamageReport,
            {
                "id": uuid.uuid4(),
                "claim_id": payload.claim_id,
                "total_photos": summary["total_photos"],
                "analyzed_photos": summary["analyzed_photos"],
                "failed_photos": summary["failed_photos"],
                "damage_types": summary["damage_types"],
                "highest_severity": summary["highest_severity"],
                "overall_confidence": summary["overall_confidence"],
                "captions": [a.caption for a in results.values() if a.caption],
                "job_id": ctx.job_id,
                "updated_at": now,
            },
            ["claim_id"],
        )
        await db.commit()

    logger.info(
        "trace=%s claim %s: %d findings, highest severity %s",
        ctx.trace_id,
        payload.claim_id,
        summary["findings"],
        summary["highest_severity"],
    )
    return Ok({"claim_id": payload.claim_id, **summary})


# ─────────────────────────────────────────────
# weather ingest
# ─────────────────────────────────────────────


async def handle_weather_ingest(payload: WeatherIngestPayload, ctx: JobContext) -> Outcome:
    day = payload.observed_on or (utcnow().date() - timedelta(days=1))
    latitude = round(payload.latitude, 2)
    longitude = round(payload.longitude, 2)

    weather = await fetch_daily_weather(latitude, longitude, day)

    async with ctx.session() as db:
        await upsert(
            db,
            WeatherObservation,
            {
                "id": uuid.uuid4(),
                "latitude": latitude,
                "longitude": longitude,
                "observed_on": day,
                "max_wind_gust_kmh": weather.max_wind_gust_kmh,
                "precipitation_mm": weather.precipitation_mm,
                "max_temperature_c": weather.max_temperature_c,
                "weather_code": weather.weather_code,
                "hail_likely": weather.hail_likely,
                "raw": weather.raw,
                "job_id": ctx.job_id,
                "updated_at": utcnow(),
            },
            ["latitude", "longitude", "observed_on"],
        )
        await db.commit()

    return Ok({
        "latitude": latitude,
        "longitude": longitude,
        "observed_on": day.isoformat(),
        "hail_likely": weather.hail_likely,
        "max_wind_gust_kmh": weather.max_wind_gust_kmh,
    })


# ─────────────────────────────────────────────
# proposal generation
# ─────────────────────────────────────────────


def proposal_filename(proposal_id: str) -> str:
    safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in proposal_id)
    return f"proposal_{safe}.html"


async def handle_proposal_generate(payload: ProposalGeneratePayload, ctx: JobContext) -> Outcome:
    settings = get_settings()
    totals = proposal_totals(payload.line_items, payload.tax_rate)
    document = render_proposal_html(
        payload.proposal_id,
        payload.customer_name,
        payload.address,
        payload.line_items,
        totals,
        payload.tax_rate,
    )
    path = await asyncio.to_thread(
        write_document, settings.document_dir, proposal_filename(payload.proposal_id), document
    )

    async with ctx.session() as db:
        await upsert(
            db,
            Proposal,
            {
                "id": uuid.uuid4(),
                "proposal_id": payload.proposal_id,
                "claim_id": payload.claim_id,
                "document_path": str(path),
                "subtotal": float(totals.subtotal),
                "tax": float(totals.tax),
                "total": float(totals.total),
                "status": "ready",
                "job_id": ctx.job_id,
                "updated_at": utcnow(),
            },
            ["proposal_id"],
        )
        await db.commit()

    return Ok({
        "proposal_id": payload.proposal_id,
        "document_path": str(path),
        "subtotal": str(totals.subtotal),
        "tax": str(totals.tax),
        "total": str(totals.total),
    })


# ─────────────────────────────────────────────
# wiring
# ─────────────────────────────────────────────


def build_registry() -> JobRegistry:
    registry = JobRegistry()
    registry.register(ECHO, EchoPayload, handle_echo)
    registry.register(DAMAGE_ANALYZE, DamageAnalyzePayload, handle_damage_analyze, max_attempts=5)
    registry.register(WEATHER_INGEST, WeatherIngestPayload, handle_weather_ingest, max_attempts=5, timeout=120)
    registry.register(PROPOSAL_GENERATE, ProposalGeneratePayload, handle_proposal_generate, timeout=300)
    return registry


def recurring_from_settings(settings: Settings) -> list[RecurringJob]:
    """One daily weather-ingest series per configured "lat,lon" location."""
    recurring = []
    for location in settings.recurring_weather_locations:
        lat_text, _, lon_text = location.partition(",")
        latitude, longitude = round(float(lat_text), 2), round(float(lon_text), 2)
        recurring.append(
            RecurringJob(
                job_type=WEATHER_INGEST,
                payload={"latitude": latitude, "longitude": longitude},
                interval=ONE_DAY,
                dedupe_key=f"{WEATHER_INGEST}:{latitude},{longitude}",
            )
        )
    return recurring
