from __future__ import annotations

import pytest

from cloudreconcile.backoff import BackoffPolicy
from cloudreconcile.classifier import ApiError
from cloudreconcile.errors import ExitCode, FatalOperationError, RetriesExhaustedError
from cloudreconcile.retry import run_with_retry

_POLICY = BackoffPolicy(base_delay=1.0, growth=2.0, jitter_ratio=0.0, max_delay=30.0)


def test_retry_recovers_after_transient_failures(clock) -> None:
    attempts = {"count": 0}

    def operation() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise ApiError("Throttling", "slow down")
        return "ok"

    result = run_with_retry(operation, policy=_POLICY, timeout=60, clock=clock)

    assert result == "ok"
    assert attempts["count"] == 3
    assert clock.sleeps == [1.0, 2.0]


def test_retry_stops_on_fatal_error(clock) -> None:
    calls = {"count": 0}

    def operation() -> str:
        calls["count"] += 1
        raise ApiError("InvalidParameter", "bad name")

    with pytest.raises(FatalOperationError) as exc_info:
        run_with_retry(operation, policy=_POLICY, timeout=60, clock=clock, action="create")

    assert calls["count"] == 1
    assert clock.sleeps == []
    assert exc_info.value.code == ExitCode.OPERATION_ERROR
    assert exc_info.value.attempts == 1
    assert isinstance(exc_info.value.__cause__, ApiError)
    assert exc_info.value.message.startswith("create failed:")


def test_retry_raises_exhausted_when_next_delay_overshoots_deadline(clock) -> None:
    def operation() -> str:
        raise ApiError("ServiceUnavailable", "try later")

    with pytest.raises(RetriesExhaustedError) as exc_info:
        run_with_retry(operation, policy=_POLICY, timeout=5, clock=clock)

    error = exc_info.value
    # 1s + 2s fit in the budget; the following 4s delay would end at 7s.
    assert clock.sleeps == [1.0, 2.0]
    assert error.attempts == 3
    assert isinstance(error.last_error, ApiError)
    assert len(error.history) == 3
    assert error.code == ExitCode.RETRIES_EXHAUSTED


def test_zero_timeout_allows_exactly_one_attempt(clock) -> None:
    calls = {"count": 0}

    def operation() -> str:
        calls["count"] += 1
        raise ApiError("Throttling")

    with pytest.raises(RetriesExhaustedError):
        run_with_retry(operation, policy=_POLICY, timeout=0, clock=clock)

    assert calls["count"] == 1


def test_on_retry_receives_attempt_error_and_delay(clock) -> None:
    seen: list[tuple[int, str, float]] = []
    attempts = {"count": 0}

    def operation() -> int:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise TimeoutError("read timeout")
        return 42

    result = run_with_retry(
        operation,
        policy=_POLICY,
        timeout=60,
        clock=clock,
        on_retry=lambda attempt, exc, delay: seen.append((attempt, type(exc).__name__, delay)),
    )

    assert result == 42
    assert seen == [(0, "TimeoutError", 1.0)]
