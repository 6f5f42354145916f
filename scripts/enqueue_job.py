# scripts/enqueue_job.py
"""
Enqueue a job by hand, e.g. to re-run ingestion for one day.
Run: python scripts/enqueue_job.py weather-ingest '{"latitude": 32.78, "longitude": -96.8}'
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from api.app.config import get_settings
from db.session import get_db
from jobs.handlers import build_registry
from jobs.queue import enqueue


async def submit(job_type: str, payload: dict, dedupe_key: str | None, priority: int) -> None:
    async for db in get_db():
        max_attempts = build_registry().max_attempts_for(job_type, get_settings().job_default_max_attempts)
        job_id = await enqueue(
            db, job_type, payload, dedupe_key=dedupe_key, priority=priority, max_attempts=max_attempts
        )
        print(f"Enqueued {job_type}: {job_id}")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("job_type")
    parser.add_argument("payload", nargs="?", default="{}", help="JSON object")
    parser.add_argument("--dedupe-key", default=None)
    parser.add_argument("--priority", type=int, default=0)
    args = parser.parse_args()

    asyncio.run(submit(args.job_type, json.loads(args.payload), args.dedupe_key, args.priority))


if __name__ == "__main__":
    main()
