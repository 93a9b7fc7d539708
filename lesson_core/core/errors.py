"""Error taxonomy for the lesson core.

Faults are raised as exceptions. Expected outcomes that callers branch on
(quota exhausted, unknown lesson or user) are returned as typed results so the
glue layer never has to special-case exceptions for them.
"""
from dataclasses import dataclass
from typing import Literal

QuotaReason = Literal["messages", "tokens"]


class LessonCoreError(Exception):
    """Base class for faults raised by the lesson core."""


class ValidationError(LessonCoreError):
    """Malformed input: a field is missing or outside its enum."""

    def __init__(self, field: str, message: str = "invalid value"):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class ConcurrencyConflict(LessonCoreError):
    """A conditional update matched zero rows although the quota was not exhausted.

    The record changed between the update and the re-read (e.g. a weekly reset
    landed). Re-check the quota and retry once.
    """


class StoreUnavailable(LessonCoreError):
    """Underlying persistence failed. Transient; retryable by the caller."""


@dataclass(frozen=True)
class QuotaExceeded:
    """The user's weekly budget is used up."""
    reason: QuotaReason


@dataclass(frozen=True)
class NotFound:
    """Unknown lesson or user."""
    kind: Literal["lesson", "user"]
    key: str
