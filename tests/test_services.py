# tests/test_services.py
"""
Provider clients and document rendering, without network access.
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from jobs.errors import PermanentJobError, TransientJobError
from services.documents import LineItem, proposal_totals, render_proposal_html, write_document
from services.vision import analyze_photo
from services.weather import fetch_daily_weather

DAY = date(2026, 10, 18)


@pytest.fixture
def weather_transport(monkeypatch, settings):
    """Route the weather client through an httpx.MockTransport answering with `responses[0]`."""
    responses: list[httpx.Response] = []
    requests: list[httpx.Request] = []
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses[0]

    monkeypatch.setattr(
        "services.weather.httpx.AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    monkeypatch.setattr("services.weather.get_settings", lambda: settings)
    return responses, requests


@pytest.mark.asyncio
async def test_fetch_daily_weather_parses_daily_values(weather_transport):
    responses, requests = weather_transport
    responses.append(
        httpx.Response(
            200,
            json={
                "daily": {
                    "time": ["2026-10-18"],
                    "wind_gusts_10m_max": [92.5],
                    "precipitation_sum": [31.2],
                    "temperature_2m_max": [24.0],
                    "weather_code": [99],
                }
            },
        )
    )

    weather = await fetch_daily_weather(32.78, -96.8, DAY)

    assert weather.max_wind_gust_kmh == 92.5
    assert weather.precipitation_mm == 31.2
    assert weather.weather_code == 99
    assert weather.hail_likely is True
    assert requests[0].url.params["start_date"] == "2026-10-18"
    assert requests[0].url.params["latitude"] == "32.78"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, error",
    [
        (httpx.Response(503), TransientJobError),
        (httpx.Response(429), TransientJobError),
        (httpx.Response(400, text="bad latitude"), PermanentJobError),
        (httpx.Response(200, json={"daily": {"time": []}}), TransientJobError),
    ],
)
async def test_fetch_daily_weather_classifies_failures(weather_transport, response, error):
    responses, _ = weather_transport
    responses.append(response)

    with pytest.raises(error):
        await fetch_daily_weather(32.78, -96.8, DAY)


@pytest.mark.asyncio
async def test_analyze_photo_without_api_key_is_permanent(settings):
    settings = settings.model_copy(update={"openai_api_key": None})
    with patch("services.vision.get_settings", return_value=settings):
        with pytest.raises(PermanentJobError):
            await analyze_photo("https://photos.example.com/roof.jpg")


def _completion(content: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _open(openai_client: MagicMock, client: MagicMock) -> None:
    openai_client.return_value.__aenter__ = AsyncMock(return_value=client)
    openai_client.return_value.__aexit__ = AsyncMock(return_value=False)


@pytest.mark.asyncio
async def test_analyze_photo_parses_findings_and_closes_client(settings):
    settings = settings.model_copy(update={"openai_api_key": "sk-test"})
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=_completion(
            '{"caption": "hail on north slope",'
            ' "damages": [{"damage_type": "hail_impact", "severity": "high", "confidence": 0.9}]}'
        )
    )

    with patch("services.vision.get_settings", return_value=settings), \
            patch("services.vision.AsyncOpenAI") as openai_client:
        _open(openai_client, client)
        analysis = await analyze_photo("https://photos.example.com/roof.jpg")

    assert analysis.caption == "hail on north slope"
    assert [(d.damage_type, d.severity) for d in analysis.damages] == [("hail_impact", "high")]
    openai_client.assert_called_once_with(api_key="sk-test")
    openai_client.return_value.__aexit__.assert_awaited_once()


@pytest.mark.asyncio
async def test_analyze_photo_connection_error_is_transient_and_closes_client(settings):
    settings = settings.model_copy(update={"openai_api_key": "sk-test"})
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        side_effect=openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))
    )

    with patch("services.vision.get_settings", return_value=settings), \
            patch("services.vision.AsyncOpenAI") as openai_client:
        _open(openai_client, client)
        with pytest.raises(TransientJobError):
            await analyze_photo("https://photos.example.com/roof.jpg")

    openai_client.return_value.__aexit__.assert_awaited_once()


def test_proposal_totals_round_to_cents():
    items = [
        LineItem(description="Ridge cap", quantity=3, unit_price=19.995),
        LineItem(description="Drip edge", quantity=2.5, unit_price=10),
    ]

    totals = proposal_totals(items, 0.07)

    assert totals.subtotal == Decimal("84.99")
    assert totals.tax == Decimal("5.95")
    assert totals.total == Decimal("90.94")


def test_render_proposal_escapes_customer_input():
    items = [LineItem(description="<script>x</script>", quantity=1, unit_price=100)]
    html = render_proposal_html("P-1", "A & B Roofing", "1 Main", items, proposal_totals(items, 0), 0)

    assert "<script>" not in html
    assert "A &amp; B Roofing" in html
    assert "Total: $100.00" in html


def test_write_document_replaces_existing(tmp_path):
    first = write_document(tmp_path / "docs", "p.html", "one")
    second = write_document(tmp_path / "docs", "p.html", "two")

    assert first == second
    assert second.read_text(encoding="utf-8") == "two"
    assert [p.name for p in (tmp_path / "docs").iterdir()] == ["p.html"]
