"""
Retry Policy - Bounded backoff for transient upstream failures

WHAT: Explicit retry policy object passed into the embedding and generation clients
WHERE: solo_tutor/runtime/memory/retry.py - client support layer
WHO: EmbeddingClient and GenerationClient

Only the model-service clients retry. Datastore calls are never retried here;
the surrounding service owns datastore retry policy.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES: FrozenSet[int] = frozenset({408, 409, 429, 500, 502, 503, 504})


class RetriesExhausted(RuntimeError):
    """Raised when every attempt failed with a transient error."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff: ``backoff_seconds * 2**attempt`` capped at ``max_backoff_seconds``."""

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    retry_statuses: FrozenSet[int] = RETRYABLE_STATUSES
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def none(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    def delay(self, attempt: int) -> float:
        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** attempt))

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code in self.retry_statuses
        return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))

    def call(self, fn: Callable[[], T], *, label: str = "request") -> T:
        """Run ``fn`` until it succeeds, a permanent error occurs, or attempts run out.

        Permanent errors propagate unchanged; exhausted transient errors raise
        ``RetriesExhausted`` chained to the last failure.
        """

        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return fn()
            except Exception as exc:
                if not self.is_transient(exc):
                    raise
                if attempt >= attempts - 1:
                    raise RetriesExhausted(attempts, exc) from exc
                wait = self.delay(attempt)
                logger.warning(
                    "%s failed with transient error (attempt %d/%d), retrying in %.2fs: %s",
                    label,
                    attempt + 1,
                    attempts,
                    wait,
                    exc,
                )
                self.sleep(wait)
        raise AssertionError("unreachable")


__all__ = [
    "RETRYABLE_STATUSES",
    "RetriesExhausted",
    "RetryPolicy",
]
