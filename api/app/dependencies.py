# api/app/dependencies.py
from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_db
from jobs.handlers import build_registry
from jobs.registry import JobRegistry


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_db():
        yield session


@lru_cache
def get_registry() -> JobRegistry:
    """Handler registry, used here only for per-type defaults at enqueue time."""
    return build_registry()
