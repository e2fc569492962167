from __future__ import annotations

import math
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for one REST call.

    Attempt ``n`` waits ``base_delay_ms * 2**(n-1)`` capped at ``max_delay_ms``,
    scaled by a jitter factor in [0.5, 1.5). A Retry-After hint replaces the
    computed delay but is still capped. Retrying stops once the summed waits
    would exceed ``total_wait_cap_seconds``.
    """

    attempts: int = 4
    base_delay_ms: int = 400
    max_delay_ms: int = 4000
    total_wait_cap_seconds: float = 8.0
    jitter_seed: int = 17

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delay values must be >= 0")

    def delay_ms(self, attempt: int, jitter: float, retry_after_s: float | None = None) -> int:
        if retry_after_s is not None:
            return min(self.max_delay_ms, int(retry_after_s * 1000))
        backoff = min(self.max_delay_ms, self.base_delay_ms * 2 ** (attempt - 1))
        return int(backoff * (0.5 + jitter))


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str
    used_retry_after: bool = False


@dataclass
class _WaitBudget:
    cap_seconds: float
    spent_seconds: float = 0.0

    def take(self, seconds: float) -> bool:
        if self.spent_seconds + seconds > self.cap_seconds:
            return False
        self.spent_seconds += seconds
        return True


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Binance sends Retry-After as a number of seconds; anything else is ignored."""
    if value is None or not value.strip():
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if math.isfinite(seconds) and seconds >= 0 else None


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[Exception], ...],
    retry_after: Callable[[Exception], float | None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds; the last error is re-raised when retries run out."""
    prng = random.Random(policy.jitter_seed)
    budget = _WaitBudget(policy.total_wait_cap_seconds)
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as exc:
            if attempt >= policy.attempts:
                raise
            hint = retry_after(exc) if retry_after is not None else None
            delay_ms = policy.delay_ms(attempt, prng.random(), hint)
            if not budget.take(delay_ms / 1000):
                raise
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        attempt=attempt,
                        delay_ms=delay_ms,
                        error_type=type(exc).__name__,
                        used_retry_after=hint is not None,
                    )
                )
            sleep_fn(delay_ms / 1000)
            attempt += 1
