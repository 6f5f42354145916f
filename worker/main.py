# worker/main.py
"""
Background worker: polls the job queue and dispatches to handlers.

Run one per CPU (or more for I/O heavy queues); all instances share the
jobs table. Exits non-zero when the job store becomes unreachable so the
process supervisor restarts it.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from api.app.config import get_settings
from db.engine import dispose_engine
from db.session import get_session_factory
from jobs.handlers import build_registry, recurring_from_settings
from jobs.scheduler import start_scheduler
from jobs.worker import Worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")


async def run_loop() -> None:
    settings = get_settings()
    registry = build_registry()
    session_factory = get_session_factory()

    worker = Worker(registry, session_factory, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows
            pass

    scheduler = await start_scheduler(
        registry,
        session_factory,
        settings,
        recurring_from_settings(settings),
    )
    try:
        await worker.run()
    finally:
        await scheduler.stop()
        await dispose_engine()


def main() -> None:
    try:
        asyncio.run(run_loop())
    except Exception:
        logger.exception("Worker exiting on fatal error")
        sys.exit(1)


if __name__ == "__main__":
    main()
