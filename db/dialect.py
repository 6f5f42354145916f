# db/dialect.py
"""
Dialect-aware INSERT so upserts work on Postgres (production)
and SQLite (tests) with the same ON CONFLICT clauses.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(db: AsyncSession, model: Any):
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


async def upsert(
    db: AsyncSession,
    model: Any,
    values: dict,
    conflict_columns: list[str],
) -> None:
    """INSERT ... ON CONFLICT (conflict_columns) DO UPDATE every other column."""
    stmt = insert_for(db, model).values(**values)
    updates = {
        key: stmt.excluded[key]
        for key in values
        if key not in conflict_columns and key not in ("id", "created_at")
    }
    stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=updates)
    await db.execute(stmt)
