# tests/test_handlers.py
"""
Domain handlers run through a real worker; external providers are mocked.
Reruns of the same payload must leave the same rows behind.
"""
from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from jobs.errors import PermanentJobError, TransientJobError
from jobs.handlers import (
    DAMAGE_ANALYZE,
    PROPOSAL_GENERATE,
    WEATHER_INGEST,
    build_registry,
    proposal_filename,
    recurring_from_settings,
    summarize_damage,
)
from jobs.queue import cancel_job, enqueue, get_job
from jobs.worker import Worker
from models.damage import DamageFinding, DamageReport
from models.job import JobState
from models.proposal import Proposal
from models.weather import WeatherObservation
from services.vision import Damage, PhotoAnalysis
from services.weather import DailyWeather

PHOTOS = [
    "https://photos.example.com/roof-1.jpg",
    "https://photos.example.com/roof-2.jpg",
    "https://photos.example.com/roof-3.jpg",
    "https://photos.example.com/roof-4.jpg",
]


def analysis(*damages: tuple[str, str, float]) -> PhotoAnalysis:
    return PhotoAnalysis(
        caption=f"{len(damages)} findings",
        damages=[Damage(damage_type=t, severity=s, confidence=c) for t, s, c in damages],
    )


async def _run(session_factory, settings, clock, job_type, payload):
    async with session_factory() as db:
        job_id = await enqueue(db, job_type, payload, max_attempts=3, now=clock())
        await db.commit()

    worker = Worker(build_registry(), session_factory, settings, worker_id="w1", clock=clock)
    assert await worker.run_once() == 1

    async with session_factory() as db:
        return await get_job(db, job_id)


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# ─────────────────────────────────────────────
# damage-analyze
# ─────────────────────────────────────────────


def test_summarize_damage_picks_highest_severity():
    summary = summarize_damage(
        {
            PHOTOS[0]: analysis(("hail_impact", "medium", 0.9), ("granule_loss", "low", 0.7)),
            PHOTOS[1]: analysis(("hail_impact", "high", 0.8)),
        },
        total_photos=3,
    )

    assert summary["damage_types"] == ["hail_impact", "granule_loss"]
    assert summary["highest_severity"] == "high"
    assert summary["overall_confidence"] == 0.8
    assert summary["failed_photos"] == 1
    assert summary["findings"] == 3


@pytest.mark.asyncio
async def test_damage_analyze_writes_findings_and_report(session_factory, settings, clock):
    by_url = {
        PHOTOS[0]: analysis(("hail_impact", "high", 0.9), ("granule_loss", "medium", 0.7)),
        PHOTOS[1]: analysis(("wind_damage", "critical", 0.8)),
        PHOTOS[2]: analysis(),
        PHOTOS[3]: TransientJobError("vision provider unavailable"),
    }

    async def fake_analyze(url):
        result = by_url[url]
        if isinstance(result, Exception):
            raise result
        return result

    payload = {"claim_id": "CLM-1001", "photo_urls": PHOTOS, "max_concurrent": 2}
    with patch("jobs.handlers.analyze_photo", new=AsyncMock(side_effect=fake_analyze)):
        job = await _run(session_factory, settings, clock, DAMAGE_ANALYZE, payload)

    assert job.state == JobState.COMPLETED
    assert job.result["analyzed_photos"] == 3
    assert job.result["failed_photos"] == 1
    assert job.result["highest_severity"] == "critical"
    assert await _count(session_factory, DamageFinding) == 3

    async with session_factory() as db:
        report = (await db.execute(select(DamageReport))).scalar_one()
    assert report.claim_id == "CLM-1001"
    assert report.damage_types == ["hail_impact", "granule_loss", "wind_damage"]
    assert report.job_id == job.id

    # rerun with fewer findings on the first photo replaces the old rows
    by_url[PHOTOS[0]] = analysis(("hail_impact", "high", 0.9))
    with patch("jobs.handlers.analyze_photo", new=AsyncMock(side_effect=fake_analyze)):
        rerun = await _run(session_factory, settings, clock, DAMAGE_ANALYZE, payload)

    assert rerun.state == JobState.COMPLETED
    assert await _count(session_factory, DamageFinding) == 2
    assert await _count(session_factory, DamageReport) == 1


@pytest.mark.asyncio
async def test_damage_analyze_rerun_is_idempotent(session_factory, settings, clock):
    fake = AsyncMock(return_value=analysis(("hail_impact", "high", 0.9)))
    payload = {"claim_id": "CLM-2002", "photo_urls": PHOTOS[:2]}

    with patch("jobs.handlers.analyze_photo", new=fake):
        await _run(session_factory, settings, clock, DAMAGE_ANALYZE, payload)
        await _run(session_factory, settings, clock, DAMAGE_ANALYZE, payload)

    assert fake.await_count == 4
    assert await _count(session_factory, DamageFinding) == 2
    assert await _count(session_factory, DamageReport) == 1


@pytest.mark.asyncio
async def test_damage_analyze_all_photos_rejected_is_permanent(session_factory, settings, clock):
    fake = AsyncMock(side_effect=PermanentJobError("OPENAI_API_KEY is not configured"))
    payload = {"claim_id": "CLM-3003", "photo_urls": PHOTOS[:2]}

    with patch("jobs.handlers.analyze_photo", new=fake):
        job = await _run(session_factory, settings, clock, DAMAGE_ANALYZE, payload)

    assert job.state == JobState.FAILED
    assert "OPENAI_API_KEY" in job.last_error
    assert await _count(session_factory, DamageReport) == 0


@pytest.mark.asyncio
async def test_damage_analyze_all_photos_unavailable_retries(session_factory, settings, clock):
    fake = AsyncMock(side_effect=TransientJobError("rate limited"))
    payload = {"claim_id": "CLM-4004", "photo_urls": PHOTOS[:1]}

    with patch("jobs.handlers.analyze_photo", new=fake):
        job = await _run(session_factory, settings, clock, DAMAGE_ANALYZE, payload)

    assert job.state == JobState.RETRYING


@pytest.mark.asyncio
async def test_damage_analyze_rejects_too_many_photos(session_factory, settings, clock):
    payload = {"claim_id": "CLM-5005", "photo_urls": [f"https://p/{i}.jpg" for i in range(21)]}

    with patch("jobs.handlers.analyze_photo", new=AsyncMock()) as fake:
        job = await _run(session_factory, settings, clock, DAMAGE_ANALYZE, payload)

    assert job.state == JobState.FAILED
    fake.assert_not_awaited()


@pytest.mark.asyncio
async def test_damage_analyze_stops_between_chunks_when_cancelled(session_factory, settings, clock):
    payload = {"claim_id": "CLM-6006", "photo_urls": PHOTOS, "max_concurrent": 2}
    async with session_factory() as db:
        job_id = await enqueue(db, DAMAGE_ANALYZE, payload, max_attempts=3, now=clock())
        await db.commit()

    async def cancel_while_analyzing(url):
        if url == PHOTOS[0]:
            async with session_factory() as db:
                await cancel_job(db, job_id, now=clock())
                await db.commit()
        return analysis(("hail_impact", "high", 0.9))

    fake = AsyncMock(side_effect=cancel_while_analyzing)
    worker = Worker(build_registry(), session_factory, settings, worker_id="w1", clock=clock)
    with patch("jobs.handlers.analyze_photo", new=fake):
        assert await worker.run_once() == 1

    async with session_factory() as db:
        job = await get_job(db, job_id)
    assert job.state == JobState.FAILED
    assert "cancelled during damage analysis" in job.last_error
    # second chunk never sent to the provider
    assert fake.await_count == 2
    assert await _count(session_factory, DamageFinding) == 0
    assert await _count(session_factory, DamageReport) == 0


# ─────────────────────────────────────────────
# weather-ingest
# ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_weather_ingest_upserts_one_row_per_point_and_day(session_factory, settings, clock):
    day = date(2026, 10, 18)
    fake = AsyncMock(
        return_value=DailyWeather(
            observed_on=day,
            max_wind_gust_kmh=81.4,
            precipitation_mm=22.0,
            max_temperature_c=27.5,
            weather_code=96,
        )
    )
    payload = {"latitude": 32.77671, "longitude": -96.79701, "observed_on": "2026-10-18"}

    with patch("jobs.handlers.fetch_daily_weather", new=fake):
        first = await _run(session_factory, settings, clock, WEATHER_INGEST, payload)
        second = await _run(session_factory, settings, clock, WEATHER_INGEST, payload)

    assert first.state == second.state == JobState.COMPLETED
    assert first.result["hail_likely"] is True
    fake.assert_awaited_with(32.78, -96.8, day)

    async with session_factory() as db:
        [row] = (await db.execute(select(WeatherObservation))).scalars().all()
    assert (row.latitude, row.longitude, row.observed_on) == (32.78, -96.8, day)
    assert row.hail_likely is True
    assert row.job_id == second.id


@pytest.mark.asyncio
async def test_weather_ingest_provider_outage_retries(session_factory, settings, clock):
    fake = AsyncMock(side_effect=TransientJobError("weather provider returned 503"))
    payload = {"latitude": 32.7, "longitude": -96.8, "observed_on": "2026-10-18"}

    with patch("jobs.handlers.fetch_daily_weather", new=fake):
        job = await _run(session_factory, settings, clock, WEATHER_INGEST, payload)

    assert job.state == JobState.RETRYING
    assert await _count(session_factory, WeatherObservation) == 0


def test_recurring_from_settings(settings):
    settings = settings.model_copy(update={"recurring_weather_locations": ["32.7767,-96.797", "39.74,-104.99"]})

    recurring = recurring_from_settings(settings)

    assert [r.payload for r in recurring] == [
        {"latitude": 32.78, "longitude": -96.8},
        {"latitude": 39.74, "longitude": -104.99},
    ]
    assert recurring[0].dedupe_key == "weather-ingest:32.78,-96.8"
    assert {r.job_type for r in recurring} == {WEATHER_INGEST}


# ─────────────────────────────────────────────
# proposal-generate
# ─────────────────────────────────────────────


PROPOSAL = {
    "proposal_id": "P-77",
    "claim_id": "CLM-1001",
    "customer_name": "Dana <Ruiz>",
    "address": "12 Elm St",
    "line_items": [
        {"description": "Architectural shingles", "quantity": 30, "unit_price": 125.50},
        {"description": "Tear-off and labor", "quantity": 1, "unit_price": 1999.99},
    ],
    "tax_rate": 0.0825,
}


@pytest.mark.asyncio
async def test_proposal_generate_writes_document_and_row(session_factory, settings, clock):
    with patch("jobs.handlers.get_settings", return_value=settings):
        job = await _run(session_factory, settings, clock, PROPOSAL_GENERATE, PROPOSAL)
        rerun = await _run(session_factory, settings, clock, PROPOSAL_GENERATE, PROPOSAL)

    assert job.state == rerun.state == JobState.COMPLETED
    assert job.result["subtotal"] == "5764.99"
    assert job.result["tax"] == "475.61"
    assert job.result["total"] == "6240.60"

    path = settings.document_dir / proposal_filename("P-77")
    assert job.result["document_path"] == str(path)
    html = path.read_text(encoding="utf-8")
    assert "Dana &lt;Ruiz&gt;" in html
    assert "$6,240.60" in html
    # the rerun replaced the file, no temp files left over
    assert sorted(p.name for p in settings.document_dir.iterdir()) == [path.name]

    async with session_factory() as db:
        [proposal] = (await db.execute(select(Proposal))).scalars().all()
    assert proposal.total == pytest.approx(6240.60)
    assert proposal.job_id == rerun.id


@pytest.mark.asyncio
async def test_proposal_generate_requires_line_items(session_factory, settings, clock):
    payload = {**PROPOSAL, "line_items": []}
    with patch("jobs.handlers.get_settings", return_value=settings):
        job = await _run(session_factory, settings, clock, PROPOSAL_GENERATE, payload)

    assert job.state == JobState.FAILED
    assert await _count(session_factory, Proposal) == 0


def test_proposal_filename_is_safe():
    assert proposal_filename("P-77") == "proposal_P-77.html"
    assert proposal_filename("../etc/passwd") == "proposal____etc_passwd.html"
