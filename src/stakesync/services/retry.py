from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter for ledger page fetches.

    ``max_attempts`` counts the first call. Delays double from ``base_delay_ms``
    and are capped at ``max_delay_ms``; a server supplied Retry-After wins over
    the computed delay but is capped the same way.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 5000
    max_total_sleep_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delay values must be >= 0")

    def delay_ms(
        self, attempt: int, prng: random.Random, retry_after_seconds: float | None = None
    ) -> tuple[int, bool]:
        if retry_after_seconds is not None:
            return min(self.max_delay_ms, int(retry_after_seconds * 1000)), True
        exponential = min(self.max_delay_ms, self.base_delay_ms * 2 ** (attempt - 1))
        jittered = int(exponential * (0.5 + prng.random()))
        return min(self.max_delay_ms, jittered), False


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str
    used_retry_after: bool = False


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Accept delta-seconds or an HTTP date; anything else is ignored."""

    text = (value or "").strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        try:
            when = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        return max(0.0, (when - datetime.now(UTC)).total_seconds())
    return seconds if seconds >= 0 else None


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool],
    jitter_seed: int = 0,
    sleep_fn: Callable[[float], None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
    retry_after_getter: Callable[[Exception], str | None] | None = None,
) -> T:
    sleep = sleep_fn or time.sleep
    prng = random.Random(jitter_seed)
    slept = 0.0
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            retry_after = (
                parse_retry_after_seconds(retry_after_getter(exc)) if retry_after_getter else None
            )
            delay_ms, used_retry_after = policy.delay_ms(attempt, prng, retry_after)
            delay_s = delay_ms / 1000.0
            budget = policy.max_total_sleep_seconds
            if budget is not None and slept + delay_s > budget:
                raise
            slept += delay_s
            if on_retry is not None:
                on_retry(RetryAttempt(attempt, delay_ms, type(exc).__name__, used_retry_after))
            sleep(delay_s)
