"""Retry/backoff executor for transient vendor API failures.

Every attempt may have reached the remote side before failing, so a mutating
operation retried here runs at least once and possibly several times. Pass a
stable idempotency token (see :func:`cloudreconcile.identity.build_client_token`)
wherever the vendor API accepts one.
"""

from __future__ import annotations

import logging as py_logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from cloudreconcile.backoff import BackoffPolicy
from cloudreconcile.classifier import DEFAULT_CLASSIFIER, ErrorClassifier
from cloudreconcile.clock import SYSTEM_CLOCK, Clock, Deadline
from cloudreconcile.errors import (
    DEFAULT_FAILURE,
    FatalConfigurationError,
    FatalOperationError,
    ReconcileError,
    RetriesExhaustedError,
)

T = TypeVar("T")

logger = py_logging.getLogger(__name__)

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class Attempt:
    number: int
    started_at: float
    error: BaseException | None = None


def validate_timeout(timeout: float) -> float:
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0:
        raise FatalConfigurationError(
            f"Invalid timeout: {timeout!r}",
            hint="Use a non-negative number of seconds.",
        )
    return float(timeout)


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: BackoffPolicy,
    timeout: float,
    classifier: ErrorClassifier = DEFAULT_CLASSIFIER,
    clock: Clock = SYSTEM_CLOCK,
    rng: random.Random | None = None,
    on_retry: RetryCallback | None = None,
    action: str = "operation",
) -> T:
    deadline = Deadline(validate_timeout(timeout), clock)
    history: list[Attempt] = []
    attempt = 0

    while True:
        started_at = clock.monotonic()
        try:
            result = operation()
        except ReconcileError:
            raise
        except Exception as exc:
            history.append(Attempt(number=attempt, started_at=started_at, error=exc))
            if not classifier.is_retryable(exc):
                logger.debug("%s failed with non-retryable error attempt=%s: %s", action, attempt, exc)
                raise FatalOperationError(
                    DEFAULT_FAILURE.format(action=action, cause=exc),
                    attempts=len(history),
                ) from exc

            delay = policy.delay(attempt, rng=rng)
            if not deadline.allows(delay):
                logger.warning(
                    "%s retry budget exhausted attempts=%s elapsed=%.2fs timeout=%.2fs",
                    action,
                    len(history),
                    deadline.elapsed(),
                    deadline.timeout,
                )
                raise RetriesExhaustedError(
                    DEFAULT_FAILURE.format(action=action, cause=exc),
                    hint=f"Retryable error persisted for {len(history)} attempts within {deadline.timeout:g}s.",
                    attempts=len(history),
                    last_error=exc,
                    history=list(history),
                ) from exc

            logger.warning(
                "%s hit retryable error attempt=%s delay=%.2fs: %s",
                action,
                attempt,
                delay,
                exc,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            clock.sleep(delay)
            attempt += 1
            continue

        history.append(Attempt(number=attempt, started_at=started_at))
        if attempt:
            logger.debug("%s succeeded after %s attempts", action, len(history))
        return result
