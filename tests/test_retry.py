from __future__ import annotations

import pytest

from stakesync.services.retry import (
    RetryAttempt,
    RetryPolicy,
    parse_retry_after_seconds,
    retry_with_backoff,
)


class Transient(Exception):
    def __init__(self, retry_after: str | None = None) -> None:
        super().__init__("transient")
        self.retry_after = retry_after


def test_retries_until_success_with_capped_backoff() -> None:
    attempts = 0
    sleeps: list[float] = []
    observed: list[RetryAttempt] = []

    def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise Transient()
        return "ok"

    result = retry_with_backoff(
        flaky,
        policy=RetryPolicy(max_attempts=3, base_delay_ms=1000, max_delay_ms=5000),
        should_retry=lambda exc: isinstance(exc, Transient),
        sleep_fn=sleeps.append,
        on_retry=observed.append,
    )

    assert result == "ok"
    assert attempts == 3
    assert [attempt.attempt for attempt in observed] == [1, 2]
    assert 0.5 <= sleeps[0] <= 1.5
    assert 1.0 <= sleeps[1] <= 3.0


def test_non_retryable_error_raises_immediately() -> None:
    sleeps: list[float] = []

    def broken() -> None:
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        retry_with_backoff(
            broken,
            policy=RetryPolicy(),
            should_retry=lambda exc: isinstance(exc, Transient),
            sleep_fn=sleeps.append,
        )

    assert sleeps == []


def test_exhausted_attempts_reraise_last_error() -> None:
    calls = 0

    def always_down() -> None:
        nonlocal calls
        calls += 1
        raise Transient()

    with pytest.raises(Transient):
        retry_with_backoff(
            always_down,
            policy=RetryPolicy(max_attempts=4, base_delay_ms=1, max_delay_ms=2),
            should_retry=lambda exc: True,
            sleep_fn=lambda _: None,
        )

    assert calls == 4


def test_retry_after_is_honoured_up_to_cap() -> None:
    sleeps: list[float] = []
    errors = [Transient(retry_after="2"), Transient(retry_after="60")]

    def rate_limited() -> str:
        if errors:
            raise errors.pop(0)
        return "ok"

    observed: list[RetryAttempt] = []
    retry_with_backoff(
        rate_limited,
        policy=RetryPolicy(max_attempts=3, base_delay_ms=100, max_delay_ms=5000),
        should_retry=lambda exc: True,
        sleep_fn=sleeps.append,
        on_retry=observed.append,
        retry_after_getter=lambda exc: getattr(exc, "retry_after", None),
    )

    assert sleeps == [2.0, 5.0]
    assert all(attempt.used_retry_after for attempt in observed)


def test_total_sleep_budget_stops_retries() -> None:
    calls = 0

    def always_down() -> None:
        nonlocal calls
        calls += 1
        raise Transient(retry_after="3")

    with pytest.raises(Transient):
        retry_with_backoff(
            always_down,
            policy=RetryPolicy(max_attempts=5, max_total_sleep_seconds=4.0),
            should_retry=lambda exc: True,
            sleep_fn=lambda _: None,
            retry_after_getter=lambda exc: exc.retry_after,
        )

    assert calls == 2


def test_parse_retry_after_seconds() -> None:
    assert parse_retry_after_seconds("3") == 3.0
    assert parse_retry_after_seconds(" 1.5 ") == 1.5
    assert parse_retry_after_seconds("-1") is None
    assert parse_retry_after_seconds("") is None
    assert parse_retry_after_seconds(None) is None
    assert parse_retry_after_seconds("not a date") is None
    assert parse_retry_after_seconds("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay_ms=-1)
