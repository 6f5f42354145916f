# jobs/errors.py
from __future__ import annotations

import uuid


class JobError(Exception):
    """Raised from deep inside a handler's call stack to signal an outcome."""

    retryable: bool = True

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TransientJobError(JobError):
    """Network timeout, rate limit, downstream 5xx."""

    retryable = True


class PermanentJobError(JobError):
    """Malformed input or misconfiguration; retrying cannot help."""

    retryable = False


class JobNotFound(LookupError):
    def __init__(self, job_id: uuid.UUID) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id
