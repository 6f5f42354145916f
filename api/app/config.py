# api/app/config.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application configuration.

    Loads environment variables from `.env` and provides
    typed access across API, worker, scheduler and handlers.
    """

    # ─────────────────────────────────────────────
    # Pydantic Settings Config
    # ─────────────────────────────────────────────
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Database (queue store)
    # ─────────────────────────────────────────────
    database_url: str = "postgresql+asyncpg://localhost/claimdesk"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # ─────────────────────────────────────────────
    # Queue defaults
    # ─────────────────────────────────────────────
    job_default_max_attempts: int = 3
    job_lease_seconds: float = 60.0
    job_retention_days: int = 14

    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 600.0

    # ─────────────────────────────────────────────
    # Worker
    # ─────────────────────────────────────────────
    worker_concurrency: int = 4
    worker_poll_interval: float = 1.0
    worker_shutdown_grace: float = 30.0

    # ─────────────────────────────────────────────
    # Scheduler
    # ─────────────────────────────────────────────
    reaper_interval: float = 30.0
    # "lat,lon" pairs ingested once a day
    recurring_weather_locations: list[str] = []

    # ─────────────────────────────────────────────
    # OpenAI (photo damage analysis)
    # ─────────────────────────────────────────────
    openai_api_key: str | None = None
    openai_vision_model: str = "gpt-4o"

    # ─────────────────────────────────────────────
    # Weather provider
    # ─────────────────────────────────────────────
    weather_api_url: str = "https://archive-api.open-meteo.com/v1/archive"
    weather_timeout_seconds: float = 15.0

    # ─────────────────────────────────────────────
    # Document Storage
    # ─────────────────────────────────────────────
    document_storage_path: str = "/data/documents"

    # ─────────────────────────────────────────────
    # Derived Properties
    # ─────────────────────────────────────────────
    @property
    def document_dir(self) -> Path:
        """
        Ensures document storage directory exists
        and returns Path object.
        """
        p = Path(self.document_storage_path)
        p.mkdir(parents=True, exist_ok=True)
        return p


# ─────────────────────────────────────────────
# Cached Settings Instance
# ─────────────────────────────────────────────
@lru_cache
def get_settings() -> Settings:
    """
    Returns a cached Settings instance so config
    is only loaded once per process.
    """
    return Settings()
