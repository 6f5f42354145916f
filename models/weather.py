# models/weather.py
from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import Boolean, Date, Float, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKey


class WeatherObservation(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "weather_observations"
    __table_args__ = (
        UniqueConstraint("latitude", "longitude", "observed_on", name="uq_weather_observations_point_day"),
    )

    # rounded to 2 decimals (~1km) so nearby requests share a row
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    observed_on: Mapped[date] = mapped_column(Date, nullable=False)

    max_wind_gust_kmh: Mapped[float | None] = mapped_column(Float, nullable=True)
    precipitation_mm: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_temperature_c: Mapped[float | None] = mapped_column(Float, nullable=True)
    weather_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hail_likely: Mapped[bool] = mapped_column(Boolean, default=False)
    source: Mapped[str] = mapped_column(String(64), default="open-meteo")
    raw: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
