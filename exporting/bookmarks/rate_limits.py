"""
Tagged results for every client call.

A fetch either succeeds, pauses the whole run (rate limited), or fails for
this unit of work only. Call sites decide explicitly what to do with each
tag instead of relying on exception paths:

- ThreadExpander / QuoteExpander: RATE_LIMITED is returned upward untouched,
  FAILED degrades into a partial result.
- BookmarkExporter: RATE_LIMITED means checkpoint-and-return, FAILED on a
  bookmark page aborts the run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

import httpx

T = TypeVar("T")

RATE_LIMIT_STATUS = 429

# Fallback only; the structured status code is checked first.
_RATE_LIMIT_TEXT = re.compile(r"rate[\s_-]?limit|\b429\b|too many", re.IGNORECASE)


class FetchStatus(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class FetchOutcome(Generic[T]):
    status: FetchStatus
    value: Optional[T] = None
    error: Optional[str] = None
    context: Optional[str] = None

    @classmethod
    def ok(cls, value: T) -> "FetchOutcome[T]":
        return cls(FetchStatus.OK, value=value)

    @classmethod
    def rate_limited(cls, error: Optional[str], context: Optional[str] = None) -> "FetchOutcome[T]":
        return cls(FetchStatus.RATE_LIMITED, error=error, context=context)

    @classmethod
    def failed(cls, error: Optional[str], context: Optional[str] = None) -> "FetchOutcome[T]":
        return cls(FetchStatus.FAILED, error=error, context=context)

    @property
    def is_ok(self) -> bool:
        return self.status is FetchStatus.OK

    @property
    def is_rate_limited(self) -> bool:
        return self.status is FetchStatus.RATE_LIMITED

    @property
    def is_failed(self) -> bool:
        return self.status is FetchStatus.FAILED

    def paused_as(self, context: str) -> "FetchOutcome[Any]":
        """Re-tag a rate-limited outcome for a caller with a different value type."""
        return FetchOutcome(FetchStatus.RATE_LIMITED, error=self.error, context=self.context or context)


def looks_rate_limited(message: Optional[str]) -> bool:
    if not message:
        return False
    return bool(_RATE_LIMIT_TEXT.search(message))


def status_code_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def classify_failure(
    message: Optional[str],
    status_code: Optional[int] = None,
    rate_limited: Optional[bool] = None,
) -> FetchStatus:
    """
    Decide between RATE_LIMITED and FAILED for an unsuccessful call.
    An explicit flag wins, then a 429 status code, then the error text
    (GraphQL endpoints report throttling inside 200 responses).
    """
    if rate_limited is not None:
        return FetchStatus.RATE_LIMITED if rate_limited else FetchStatus.FAILED
    if status_code == RATE_LIMIT_STATUS:
        return FetchStatus.RATE_LIMITED
    return FetchStatus.RATE_LIMITED if looks_rate_limited(message) else FetchStatus.FAILED


def classify_exception(exc: BaseException) -> FetchStatus:
    return classify_failure(str(exc), status_code=status_code_of(exc))
