"""Retry delay policy for transient send failures."""

import random
from dataclasses import dataclass

from notifyhub.common.config import settings


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 120.0
    cap_seconds: float = 1800.0
    jitter_ratio: float = 0.1

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay after the `attempt`-th failure (1-based)."""

        return min(self.cap_seconds, self.base_seconds * (2 ** max(0, attempt - 1)))

    def delay(self, attempt: int, retry_after: float | None = None, rng: random.Random | None = None) -> float:
        base = self.base_delay(attempt)
        jitter = (rng or random).uniform(0.0, self.jitter_ratio * base) if self.jitter_ratio > 0 else 0.0
        delay = base + jitter
        # A provider-requested wait wins when it is longer.
        if retry_after is not None and retry_after > delay:
            return retry_after
        return delay


def default_policy() -> BackoffPolicy:
    return BackoffPolicy(
        base_seconds=settings.retry_base_delay_seconds,
        cap_seconds=settings.retry_max_delay_seconds,
        jitter_ratio=settings.retry_jitter_ratio,
    )
