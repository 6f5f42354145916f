# jobs/outcomes.py
"""
Explicit handler results.

Handlers return one of these instead of raising to ask for a retry.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Ok:
    value: Any = None


@dataclass(frozen=True)
class RetryableError:
    reason: str


@dataclass(frozen=True)
class PermanentError:
    reason: str


Outcome = Union[Ok, RetryableError, PermanentError]
