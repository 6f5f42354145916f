# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.app.config import Settings
from models import Base


class FakeClock:
    """Callable clock the queue, worker and scheduler accept as `clock=`/`now=`."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        job_default_max_attempts=3,
        job_lease_seconds=60,
        worker_concurrency=4,
        worker_poll_interval=0.01,
        worker_shutdown_grace=1.0,
        reaper_interval=0.05,
        backoff_base_seconds=2,
        backoff_max_seconds=600,
        document_storage_path=str(tmp_path / "documents"),
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    # file-backed so concurrent sessions get their own connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
