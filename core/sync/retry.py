"""Retry Scheduler - backoff and next-attempt time for failed sync attempts.

    next_retry_at = now + base * 2^min(attempt_count, cap_exponent) + jitter

`attempt_count` already includes the failing attempt, so the first failure
waits `2 * base` (+ jitter).
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from core.config import SyncSettings


@dataclass
class BackoffPolicy:
    """Configuration for retry behavior."""
    base_seconds: float = 30.0
    cap_exponent: int = 6
    max_attempts: int = 5
    jitter_seconds: float = 5.0
    exponential_base: float = 2.0

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.retry_base_seconds,
            cap_exponent=settings.retry_cap_exponent,
            max_attempts=settings.max_attempts,
            jitter_seconds=settings.retry_jitter_seconds,
        )


@dataclass
class RetryDecision:
    """What to do with a mapping after a transient failure."""
    exhausted: bool
    attempt_count: int
    next_retry_at: Optional[datetime] = None
    delay_seconds: float = 0.0


@dataclass
class RetryScheduler:
    """Pure backoff computation; the only state is the jitter source."""
    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    rng: random.Random = field(default_factory=random.Random)

    def compute_delay(self, attempt_count: int) -> float:
        """Seconds to wait before the next attempt."""
        exponent = min(max(attempt_count, 0), self.policy.cap_exponent)
        delay = self.policy.base_seconds * (self.policy.exponential_base ** exponent)
        if self.policy.jitter_seconds > 0:
            delay += self.rng.uniform(0, self.policy.jitter_seconds)
        return delay

    def next_retry_at(self, attempt_count: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.compute_delay(attempt_count))

    def is_exhausted(self, attempt_count: int) -> bool:
        """True once attempt_count has reached the configured maximum."""
        return attempt_count >= self.policy.max_attempts

    def schedule(self, attempt_count: int, now: datetime) -> RetryDecision:
        """Decide the follow-up for a mapping whose attempt just failed transiently.

        Args:
            attempt_count: Count including the attempt that just failed
            now: Current time
        """
        if self.is_exhausted(attempt_count):
            return RetryDecision(exhausted=True, attempt_count=attempt_count)

        delay = self.compute_delay(attempt_count)
        return RetryDecision(
            exhausted=False,
            attempt_count=attempt_count,
            next_retry_at=now + timedelta(seconds=delay),
            delay_seconds=delay,
        )
