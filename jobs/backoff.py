# jobs/backoff.py
"""Retry delay policy: capped exponential backoff with jitter."""
from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass

from api.app.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: float = 2.0
    max_seconds: float = 600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            base_seconds=settings.backoff_base_seconds,
            max_seconds=settings.backoff_max_seconds,
        )

    def ceiling(self, attempts: int) -> float:
        """Un-jittered delay for a job that has been attempted `attempts` times."""
        return min(self.max_seconds, self.base_seconds * (2 ** min(attempts, 32)))

    def delay(self, attempts: int, rand: Callable[[], float] | None = None) -> float:
        # jitter keeps the delay within [ceiling/2, ceiling]
        jitter = (rand or random.random)()
        return self.ceiling(attempts) * (0.5 + jitter * 0.5)
