from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

RetryStrategy = Literal["fixed", "exponential"]


@dataclass(frozen=True)
class RetryPolicy:
    """When to retry a queued batch, and when to give up.

    ``max_attempts`` counts every delivery attempt, the first one included.
    ``fixed`` waits ``retry_interval`` between attempts; ``exponential`` grows
    the wait by ``backoff_multiplier`` per attempt, capped at ``max_interval``.
    With ``jitter`` the delay is drawn from 50-100% of the computed value.
    """

    max_attempts: int = 10
    retry_interval: float = 300.0
    strategy: RetryStrategy = "fixed"
    backoff_multiplier: float = 2.0
    max_interval: float = 86_400.0
    jitter: bool = False

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.retry_interval < 0:
            raise ValueError("retry_interval must be >= 0")
        if self.strategy not in ("fixed", "exponential"):
            raise ValueError(f"unknown retry strategy {self.strategy!r}")

    def next_delay_seconds(self, attempt_count: int) -> float:
        """Delay before the next attempt, given attempts already made (>= 1)."""
        if self.strategy == "fixed":
            delay = self.retry_interval
        else:
            delay = self.retry_interval * (self.backoff_multiplier ** max(0, attempt_count - 1))
        delay = min(delay, self.max_interval)
        if self.jitter:
            delay = random.uniform(delay / 2, delay)
        return delay

    def next_delay(self, attempt_count: int) -> timedelta:
        return timedelta(seconds=self.next_delay_seconds(attempt_count))

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts
