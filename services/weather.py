# services/weather.py
"""
Daily weather history for a point, from an Open-Meteo compatible archive API.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

import httpx

from api.app.config import get_settings
from jobs.errors import PermanentJobError, TransientJobError

logger = logging.getLogger(__name__)

DAILY_FIELDS = "wind_gusts_10m_max,precipitation_sum,temperature_2m_max,weather_code"

# WMO weather codes for thunderstorms with hail
HAIL_CODES = {96, 99}


@dataclass
class DailyWeather:
    observed_on: date
    max_wind_gust_kmh: float | None = None
    precipitation_mm: float | None = None
    max_temperature_c: float | None = None
    weather_code: int | None = None
    raw: dict = field(default_factory=dict)

    @property
    def hail_likely(self) -> bool:
        return self.weather_code in HAIL_CODES


async def fetch_daily_weather(latitude: float, longitude: float, day: date) -> DailyWeather:
    settings = get_settings()
    params = {
        "latitude": latitude,
        "longitude": longitude,
        "start_date": day.isoformat(),
        "end_date": day.isoformat(),
        "daily": DAILY_FIELDS,
        "timezone": "UTC",
    }

    async with httpx.AsyncClient(timeout=settings.weather_timeout_seconds) as client:
        try:
            response = await client.get(settings.weather_api_url, params=params)
        except httpx.TransportError as exc:
            raise TransientJobError(f"weather provider unreachable: {exc}") from exc

    if response.status_code == 429 or response.status_code >= 500:
        raise TransientJobError(f"weather provider returned {response.status_code}")
    if response.status_code >= 400:
        raise PermanentJobError(f"weather provider rejected request: {response.status_code} {response.text[:200]}")

    data = response.json()
    daily = data.get("daily") or {}
    if not daily.get("time"):
        # archive lags a few days behind; try again later
        raise TransientJobError(f"no weather data yet for {day} at {latitude},{longitude}")

    def first(key: str):
        values = daily.get(key) or []
        return values[0] if values else None

    code = first("weather_code")
    weather = DailyWeather(
        observed_on=day,
        max_wind_gust_kmh=first("wind_gusts_10m_max"),
        precipitation_mm=first("precipitation_sum"),
        max_temperature_c=first("temperature_2m_max"),
        weather_code=int(code) if code is not None else None,
        raw=daily,
    )
    logger.info(
        "Weather %s at %.2f,%.2f: gust=%s precip=%s code=%s",
        day,
        latitude,
        longitude,
        weather.max_wind_gust_kmh,
        weather.precipitation_mm,
        weather.weather_code,
    )
    return weather
