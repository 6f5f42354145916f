# services/observability.py
"""
Structured event log for job lifecycle problems, kept in the events
table so producers and support staff can see why work did not finish.
"""
from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from models.event import Event

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


async def log_event(
    db: AsyncSession,
    event_type: str,
    level: str = "info",
    source: str | None = None,
    message: str | None = None,
    metadata: dict | None = None,
) -> Event:
    """Persist a structured event and mirror it to the process log."""
    event = Event(
        event_type=event_type,
        level=level,
        source=source,
        message=message,
        metadata_=metadata,
    )
    db.add(event)
    await db.flush()
    logger.log(
        _LEVELS.get(level, logging.INFO),
        "[%s] %s %s",
        event_type,
        message or "",
        metadata or {},
    )
    return event
