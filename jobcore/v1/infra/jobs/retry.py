"""
Retry / backoff state machine.

A failed attempt either goes back to the queue with a pushed-out
``next_attempt_at`` or becomes terminally failed. Handler exceptions are
opaque here except for the explicit non-retryable signal.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from jobcore.config.settings import Settings
from jobcore.v1.core.exceptions import is_retryable


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryDecision:
    outcome: Outcome
    next_attempt_at: datetime | None = None
    delay_s: float | None = None


class RetryPolicy:
    """Exponential backoff with an upper bound and optional jitter."""

    def __init__(
        self,
        base_delay_s: float = 30.0,
        max_delay_s: float = 3600.0,
        jitter: float = 0.25,
        rng: random.Random | None = None,
    ):
        if base_delay_s <= 0 or max_delay_s <= 0:
            raise ValueError("Backoff delays must be positive")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_s=settings.job_backoff_base_s,
            max_delay_s=settings.job_max_backoff_s,
            jitter=settings.job_backoff_jitter,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds after the given (1-indexed) failed attempt."""
        if attempt < 1:
            raise ValueError("attempt is 1-indexed")

        # base * 2^(attempt-1), computed without overflowing for large attempts
        exponent = min(attempt - 1, 62)
        delay = min(self.max_delay_s, self.base_delay_s * (2**exponent))

        if self.jitter:
            delay += delay * self.jitter * (2 * self._rng.random() - 1)

        return max(1.0, delay)

    def decide(
        self,
        attempt: int,
        max_attempts: int,
        error: BaseException | None,
        now: datetime,
    ) -> RetryDecision:
        """Map the result of one attempt to the next state."""
        if error is None:
            return RetryDecision(Outcome.SUCCEEDED)

        if not is_retryable(error) or attempt >= max_attempts:
            return RetryDecision(Outcome.FAILED)

        delay = self.backoff_delay(attempt)
        return RetryDecision(
            Outcome.RETRY,
            next_attempt_at=now + timedelta(seconds=delay),
            delay_s=delay,
        )
