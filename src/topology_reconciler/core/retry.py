"""
Retry with exponential backoff.

Only retryable failures are retried, see core.errors.is_retryable.
Backoff sleeps go through a cancellation event so a stop request wakes the
sleeper and ends the retry loop early.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from topology_reconciler.core.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy.

    max_attempts
    Total attempts including the first one.

    base_delay_seconds, multiplier, max_delay_seconds
    Delay before attempt n+1 is base * multiplier ** (n - 1), capped.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt, counting from 1."""
        delay = self.base_delay_seconds * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class RetryCancelled(Exception):
    """Raised when cancellation interrupts a backoff sleep. Wraps the last failure."""

    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    cancel: threading.Event | None = None,
    describe: str = "call",
) -> tuple[T, int]:
    """
    Call fn, retrying retryable failures.

    Returns the value and the number of attempts made.
    Non retryable failures and the final retryable failure propagate with an
    attempts attribute attached so callers can report it.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                exc.attempts = attempt  # type: ignore[attr-defined]
                raise

            delay = policy.delay_for(attempt)
            logger.info(
                "retrying %s after attempt %d failed: %s (sleep %.2fs)",
                describe,
                attempt,
                exc,
                delay,
            )
            if cancel is not None:
                if cancel.wait(delay):
                    raise RetryCancelled(exc, attempt) from exc
            elif delay > 0:
                time.sleep(delay)
