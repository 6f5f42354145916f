# jobs/registry.py
"""
Maps job type names to typed handlers.

Payloads arrive as untyped JSON; each type declares a pydantic model
that the payload is validated against right before the handler runs.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from jobs.errors import JobError
from jobs.outcomes import Ok, Outcome, PermanentError, RetryableError

if TYPE_CHECKING:
    from jobs.worker import JobContext

logger = logging.getLogger(__name__)

Handler = Callable[[Any, "JobContext"], Awaitable[Any]]


@dataclass(frozen=True)
class JobDefinition:
    job_type: str
    payload_model: type[BaseModel]
    handler: Handler
    max_attempts: int | None = None
    timeout: float | None = None


class JobRegistry:
    def __init__(self) -> None:
        self._definitions: dict[str, JobDefinition] = {}

    def register(
        self,
        job_type: str,
        payload_model: type[BaseModel],
        handler: Handler,
        *,
        max_attempts: int | None = None,
        timeout: float | None = None,
    ) -> JobDefinition:
        if job_type in self._definitions:
            raise ValueError(f"Handler already registered for job type: {job_type}")
        definition = JobDefinition(job_type, payload_model, handler, max_attempts, timeout)
        self._definitions[job_type] = definition
        return definition

    def handler(
        self,
        job_type: str,
        payload_model: type[BaseModel],
        *,
        max_attempts: int | None = None,
        timeout: float | None = None,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""

        def decorator(fn: Handler) -> Handler:
            self.register(job_type, payload_model, fn, max_attempts=max_attempts, timeout=timeout)
            return fn

        return decorator

    def get(self, job_type: str) -> JobDefinition | None:
        return self._definitions.get(job_type)

    def max_attempts_for(self, job_type: str, default: int) -> int:
        """Per-type attempt limit, or `default` for types without one."""
        definition = self._definitions.get(job_type)
        if definition is None or definition.max_attempts is None:
            return default
        return definition.max_attempts

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._definitions

    @property
    def job_types(self) -> list[str]:
        return sorted(self._definitions)

    async def dispatch(self, job_type: str, payload: dict, ctx: JobContext) -> Outcome:
        """
        Validate and run. Never raises for handler-level problems;
        every failure comes back as a RetryableError or PermanentError.
        """
        definition = self._definitions.get(job_type)
        if definition is None:
            return PermanentError(f"Unknown job type: {job_type}")

        try:
            typed_payload = definition.payload_model.model_validate(payload)
        except ValidationError as exc:
            return PermanentError(f"Invalid payload for {job_type}: {exc}")

        try:
            if definition.timeout is not None:
                returned = await asyncio.wait_for(
                    definition.handler(typed_payload, ctx), timeout=definition.timeout
                )
            else:
                returned = await definition.handler(typed_payload, ctx)
        except asyncio.TimeoutError:
            return RetryableError(f"{job_type} timed out after {definition.timeout}s")
        except ValidationError as exc:
            # handler built a model from bad data inside the payload
            return PermanentError(f"Invalid data for {job_type}: {exc}")
        except JobError as exc:
            if exc.retryable:
                return RetryableError(exc.reason)
            return PermanentError(exc.reason)
        except Exception as exc:
            logger.exception("Handler for %s raised", job_type)
            return RetryableError(f"{type(exc).__name__}: {exc}")

        return _normalize(returned)


def _normalize(returned: Any) -> Outcome:
    if isinstance(returned, (RetryableError, PermanentError)):
        return returned
    if not isinstance(returned, Ok):
        returned = Ok(returned)
    value = returned.value
    if isinstance(value, BaseModel):
        return Ok(value.model_dump(mode="json"))
    return returned
