# =============================================================================
# Exponential Backoff
# =============================================================================
#
#   delay_ms = min(base_ms * 2**attempt, max_ms)
#
# `attempt` is zero-based: the first retry waits `base_ms`. Pure and
# deterministic; jitter is opt-in through `with_jitter()` so tests and the
# job queue get reproducible schedules.
#
# `RetryPolicy` bundles the numbers used by the in-job retry loops together
# with the sleep function, so tests can inject a zero-delay clock.
# =============================================================================

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field

DEFAULT_BASE_MS = 2_000
DEFAULT_MAX_MS = 30_000


def backoff(attempt: int, base_ms: int = DEFAULT_BASE_MS, max_ms: int = DEFAULT_MAX_MS) -> int:
    """
    Delay in milliseconds before retry number `attempt` (zero-based).

    Non-decreasing in `attempt` and never above `max_ms`.

    Raises:
        ValueError: attempt, base_ms or max_ms is negative.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    if base_ms < 0 or max_ms < 0:
        raise ValueError("base_ms and max_ms must be >= 0")
    return min(base_ms * (2**attempt), max_ms)


def with_jitter(delay_ms: int, jitter: float, rng: random.Random | None = None) -> int:
    """Spread `delay_ms` uniformly by +/- `jitter` (0.0-1.0), floored at 0."""
    if jitter <= 0 or delay_ms <= 0:
        return delay_ms
    rng = rng or random
    spread = round(delay_ms * jitter)
    return max(0, delay_ms + rng.randint(-spread, spread))


def _sleep_ms(delay_ms: int) -> None:
    time.sleep(delay_ms / 1000.0)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry settings for an external call inside a stage job.

    `max_attempts` counts retries after the first try, matching the retry
    ceiling of the embedding and LLM loops (3 retries -> up to 4 calls).
    """

    max_attempts: int = 3
    base_delay_ms: int = DEFAULT_BASE_MS
    max_delay_ms: int = DEFAULT_MAX_MS
    sleep: Callable[[int], None] = field(default=_sleep_ms, compare=False)

    def delay_for(self, attempt: int) -> int:
        return backoff(attempt, self.base_delay_ms, self.max_delay_ms)

    @classmethod
    def from_settings(cls, settings, sleep: Callable[[int], None] | None = None) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            sleep=sleep or _sleep_ms,
        )

    @classmethod
    def no_delay(cls, max_attempts: int = 3) -> RetryPolicy:
        return cls(max_attempts=max_attempts, sleep=lambda _ms: None)
