from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional

from .config import RETRY_BASE_DELAY_S, RETRY_JITTER, RETRY_MAX_DELAY_S
from .models import Job


def backoff_s(
    attempts: int,
    base_delay_s: float = RETRY_BASE_DELAY_S,
    max_delay_s: float = RETRY_MAX_DELAY_S,
) -> float:
    """Exponential backoff based on the failed attempt number (1,2,3...)."""

    # attempt 1 failure => retry after base
    # attempt 2 failure => retry after 2 * base
    # attempt 3 failure => retry after 4 * base, capped at max_delay_s
    return min(base_delay_s * (2 ** max(0, attempts - 1)), max_delay_s)


def should_retry(job: Job) -> bool:
    """Retry rule: attempts already counts the execution that just failed."""

    return job.attempts < job.max_retries


@dataclass
class RetryPolicy:
    base_delay_s: float = RETRY_BASE_DELAY_S
    max_delay_s: float = RETRY_MAX_DELAY_S
    jitter: float = RETRY_JITTER
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
            jitter=settings.retry_jitter,
            rng=rng or random.Random(),
        )

    def delay_for(self, attempts: int) -> float:
        delay = backoff_s(attempts, self.base_delay_s, self.max_delay_s)
        if self.jitter:
            delay *= self.rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, delay)
