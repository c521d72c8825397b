"""Convergence poller: wait for an eventually-consistent resource to settle."""

from __future__ import annotations

import logging as py_logging
import random
from collections.abc import Callable, Iterable
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cloudreconcile.backoff import BackoffPolicy
from cloudreconcile.classifier import DEFAULT_CLASSIFIER, ErrorClassifier
from cloudreconcile.clock import SYSTEM_CLOCK, Clock, Deadline
from cloudreconcile.errors import (
    FAILED_TO_REACH_TARGET,
    STILL_EXISTS,
    WAIT_TIMEOUT,
    ConvergenceFailedError,
    ConvergenceTimeoutError,
    FatalConfigurationError,
)
from cloudreconcile.retry import run_with_retry

logger = py_logging.getLogger(__name__)

CHECKSET = "#CHECKSET"
ABSENT = "<absent>"


class ConvergenceState(str, Enum):
    PENDING = "pending"
    TARGET = "target"
    FAILURE = "failure"
    UNKNOWN = "unknown"


class Observation(NamedTuple):
    state: str
    exists: bool = True

    @property
    def display(self) -> str:
        if not self.exists:
            return ABSENT
        return self.state or '""'


ProbeResult = Observation | tuple[str, bool]
Probe = Callable[[], ProbeResult]


def as_observation(value: object) -> Observation:
    if isinstance(value, Observation):
        return value
    if isinstance(value, tuple) and len(value) == 2:
        state, exists = value
        return Observation("" if state is None else str(state), bool(exists))
    raise TypeError(f"Describe probe must return (state, exists), got {value!r}")


def classify_state(
    observation: Observation,
    *,
    target: Iterable[str],
    fail: Iterable[str] = (),
    pending: Iterable[str] = (),
    absent_is_failure: bool = False,
) -> ConvergenceState:
    targets = frozenset(target)
    if not observation.exists:
        if not targets:
            return ConvergenceState.TARGET
        return ConvergenceState.FAILURE if absent_is_failure else ConvergenceState.PENDING

    state = observation.state
    if state in frozenset(fail):
        return ConvergenceState.FAILURE
    if targets and (state in targets or (CHECKSET in targets and state != "")):
        return ConvergenceState.TARGET
    pendings = frozenset(pending)
    if pendings and state not in pendings:
        return ConvergenceState.UNKNOWN
    return ConvergenceState.PENDING


class WaitSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    target: frozenset[str] = frozenset()
    fail: frozenset[str] = frozenset()
    pending: frozenset[str] = frozenset()
    poll_interval: float = Field(default=5.0, ge=0)
    timeout: float = Field(default=600.0, ge=0)
    delay: float = Field(default=0.0, ge=0)
    absent_is_failure: bool = False
    not_found_checks: int | None = Field(default=None, ge=1)
    continuous_target_occurrence: int = Field(default=1, ge=1)
    reported_timeout: float | None = Field(default=None, ge=0)

    @classmethod
    def build(cls, **values: object) -> WaitSettings:
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise FatalConfigurationError(
                "Invalid convergence settings.",
                hint=str(exc).splitlines()[0] if str(exc) else "",
            ) from exc

    @property
    def budget(self) -> float:
        return self.timeout if self.reported_timeout is None else self.reported_timeout

    def with_timeout(self, timeout: float) -> WaitSettings:
        return self.model_copy(update={"timeout": timeout})

    @property
    def expected(self) -> tuple[str, ...]:
        return tuple(sorted(self.target)) if self.target else (ABSENT,)


class ConvergenceWaiter:
    """Samples a describe probe until target, failure, or timeout.

    Transient probe errors are retried with ``policy`` inside the same
    deadline; the waiter itself never mutates remote state.
    """

    def __init__(
        self,
        settings: WaitSettings,
        *,
        policy: BackoffPolicy | None = None,
        classifier: ErrorClassifier = DEFAULT_CLASSIFIER,
        clock: Clock = SYSTEM_CLOCK,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.policy = policy or BackoffPolicy()
        self.classifier = classifier
        self.clock = clock
        self.rng = rng

    def _observe(self, probe: Probe, deadline: Deadline) -> Observation:
        def observe() -> Observation:
            try:
                return as_observation(probe())
            except Exception as exc:
                if not self.settings.target and self.classifier.is_not_found(exc):
                    logger.debug("Describe reported not found while waiting for absence: %s", exc)
                    return Observation("", exists=False)
                raise

        return run_with_retry(
            observe,
            policy=self.policy,
            timeout=deadline.remaining(),
            classifier=self.classifier,
            clock=self.clock,
            rng=self.rng,
            action="describe",
        )

    def _timeout_error(self, last: Observation) -> ConvergenceTimeoutError:
        settings = self.settings
        if settings.target:
            message = WAIT_TIMEOUT.format(
                seconds=settings.budget,
                got=last.display,
                expected=list(settings.expected),
            )
        else:
            message = STILL_EXISTS.format(seconds=settings.budget, got=last.display)
        return ConvergenceTimeoutError(
            message,
            hint="Raise the timeout or inspect the resource in the vendor console.",
            last_state=last.state if last.exists else None,
            expected=settings.expected,
            timeout=settings.budget,
        )

    def wait(self, probe: Probe) -> Observation:
        settings = self.settings
        deadline = Deadline(settings.timeout, self.clock)
        if not settings.fail:
            logger.debug("Waiting without failure states; remote failures surface as timeouts")
        if settings.delay > 0:
            self.clock.sleep(min(settings.delay, deadline.remaining()))

        absent_streak = 0
        target_streak = 0
        cycles = 0
        while True:
            observation = self._observe(probe, deadline)
            cycles += 1
            verdict = classify_state(
                observation,
                target=settings.target,
                fail=settings.fail,
                pending=settings.pending,
                absent_is_failure=settings.absent_is_failure,
            )
            logger.debug(
                "Poll cycle=%s state=%s verdict=%s elapsed=%.2fs",
                cycles,
                observation.display,
                verdict.value,
                deadline.elapsed(),
            )

            if verdict is ConvergenceState.FAILURE:
                logger.error("Resource entered failure state %s", observation.display)
                raise ConvergenceFailedError(
                    FAILED_TO_REACH_TARGET.format(state=observation.display),
                    hint="The remote control plane reported a terminal failure.",
                    state=observation.display,
                )

            if verdict is ConvergenceState.TARGET:
                target_streak += 1
                if target_streak >= settings.continuous_target_occurrence:
                    return observation
            else:
                target_streak = 0

            if not observation.exists and settings.target:
                absent_streak += 1
                if settings.not_found_checks is not None and absent_streak >= settings.not_found_checks:
                    logger.error("Resource absent for %s consecutive polls", absent_streak)
                    raise ConvergenceFailedError(
                        FAILED_TO_REACH_TARGET.format(state=ABSENT),
                        hint=f"Resource disappeared for {absent_streak} consecutive polls.",
                        state=ABSENT,
                    )
            else:
                absent_streak = 0

            if verdict is ConvergenceState.UNKNOWN:
                logger.warning("Unrecognized state %s; treating as pending", observation.display)

            if not deadline.allows(settings.poll_interval):
                error = self._timeout_error(observation)
                logger.error("%s", error.message)
                raise error
            self.clock.sleep(settings.poll_interval)


def wait_for_state(
    probe: Probe,
    *,
    target: Iterable[str],
    timeout: float,
    poll_interval: float = 5.0,
    fail: Iterable[str] = (),
    pending: Iterable[str] = (),
    delay: float = 0.0,
    absent_is_failure: bool = False,
    not_found_checks: int | None = None,
    continuous_target_occurrence: int = 1,
    policy: BackoffPolicy | None = None,
    classifier: ErrorClassifier = DEFAULT_CLASSIFIER,
    clock: Clock = SYSTEM_CLOCK,
    rng: random.Random | None = None,
) -> Observation:
    settings = WaitSettings.build(
        target=frozenset(target),
        fail=frozenset(fail),
        pending=frozenset(pending),
        poll_interval=poll_interval,
        timeout=timeout,
        delay=delay,
        absent_is_failure=absent_is_failure,
        not_found_checks=not_found_checks,
        continuous_target_occurrence=continuous_target_occurrence,
    )
    waiter = ConvergenceWaiter(settings, policy=policy, classifier=classifier, clock=clock, rng=rng)
    return waiter.wait(probe)
