"""Create/update/delete orchestration around a single mutating call.

Each invocation runs two strictly sequential phases against one deadline:
``requesting`` pushes the mutating call through the retry executor and
``converging`` polls the describe probe until the resource settles. The caller
always receives exactly one :class:`ReconcileOutcome`.
"""

from __future__ import annotations

import logging as py_logging
import random
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from cloudreconcile.backoff import BackoffPolicy
from cloudreconcile.classifier import DEFAULT_CLASSIFIER, ErrorClassifier
from cloudreconcile.clock import SYSTEM_CLOCK, Clock, Deadline
from cloudreconcile.config import EngineConfig
from cloudreconcile.errors import (
    ConvergenceTimeoutError,
    ReconcileError,
    RetriesExhaustedError,
)
from cloudreconcile.identity import ResourceIdentity, coerce_identity
from cloudreconcile.poller import ConvergenceWaiter, Observation, ProbeResult, WaitSettings
from cloudreconcile.retry import run_with_retry, validate_timeout

logger = py_logging.getLogger(__name__)

MutatingCall = Callable[[], Any]
Describe = Callable[[ResourceIdentity], ProbeResult]
IdentityLike = ResourceIdentity | str


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED_FAST = "failed_fast"
    FAILED_AFTER_RETRIES = "failed_after_retries"
    TIMED_OUT = "timed_out"


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Phase(str, Enum):
    REQUESTING = "requesting"
    CONVERGING = "converging"
    DONE = "done"


@dataclass
class ReconcileOutcome:
    status: OutcomeStatus
    operation: Operation
    phase: Phase
    identity: str = ""
    final_state: str | None = None
    error: ReconcileError | None = None
    attempts: int = 0
    probes: int = 0
    elapsed: float = 0.0
    skipped_request: bool = False

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    def raise_for_status(self) -> ReconcileOutcome:
        if self.error is not None:
            raise self.error
        return self


def outcome_status_for(error: ReconcileError) -> OutcomeStatus:
    if isinstance(error, ConvergenceTimeoutError):
        return OutcomeStatus.TIMED_OUT
    if isinstance(error, RetriesExhaustedError):
        return OutcomeStatus.FAILED_AFTER_RETRIES
    return OutcomeStatus.FAILED_FAST


def changed_fields(
    desired: Mapping[str, object],
    current: Mapping[str, object],
    watched: Iterable[str],
) -> list[str]:
    """Watched fields whose desired value differs from the observed one."""
    return [name for name in watched if name in desired and desired[name] != current.get(name)]


@dataclass
class _Progress:
    operation: Operation
    deadline: Deadline
    phase: Phase = Phase.REQUESTING
    identity: str = ""
    attempts: int = 0
    probes: int = 0
    skipped_request: bool = False
    already_absent: bool = False

    def succeeded(self, final_state: str | None) -> ReconcileOutcome:
        self.phase = Phase.DONE
        elapsed = self.deadline.elapsed()
        logger.debug(
            "%s succeeded identity=%s state=%s attempts=%s probes=%s elapsed=%.2fs",
            self.operation.value,
            self.identity,
            final_state,
            self.attempts,
            self.probes,
            elapsed,
        )
        return ReconcileOutcome(
            status=OutcomeStatus.SUCCEEDED,
            operation=self.operation,
            phase=Phase.DONE,
            identity=self.identity,
            final_state=final_state,
            attempts=self.attempts,
            probes=self.probes,
            elapsed=elapsed,
            skipped_request=self.skipped_request,
        )

    def failed(self, error: ReconcileError) -> ReconcileOutcome:
        error.with_context(phase=self.phase.value, identity=self.identity)
        status = outcome_status_for(error)
        elapsed = self.deadline.elapsed()
        final_state = None
        if isinstance(error, ConvergenceTimeoutError):
            final_state = error.last_state
        logger.error(
            "%s %s during %s identity=%s: %s",
            self.operation.value,
            status.value,
            self.phase.value,
            self.identity or "<unassigned>",
            error.message,
        )
        return ReconcileOutcome(
            status=status,
            operation=self.operation,
            phase=self.phase,
            identity=self.identity,
            final_state=final_state,
            error=error,
            attempts=self.attempts,
            probes=self.probes,
            elapsed=elapsed,
            skipped_request=self.skipped_request,
        )


class Reconciler:
    """Lifecycle orchestrator shared by every resource type.

    The reconciler holds no per-resource state; one instance can serve any
    number of independent invocations, including concurrent ones. Callers must
    not run two invocations against the same identity at once.
    """

    def __init__(
        self,
        *,
        policy: BackoffPolicy | None = None,
        classifier: ErrorClassifier = DEFAULT_CLASSIFIER,
        clock: Clock = SYSTEM_CLOCK,
        rng: random.Random | None = None,
        poll_interval: float = 5.0,
        delay: float = 0.0,
    ) -> None:
        self.policy = policy or BackoffPolicy()
        self.classifier = classifier
        self.clock = clock
        self.rng = rng
        self.poll_interval = poll_interval
        self.delay = delay

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        clock: Clock = SYSTEM_CLOCK,
        rng: random.Random | None = None,
    ) -> Reconciler:
        return cls(
            policy=config.to_policy(),
            classifier=config.to_classifier(),
            clock=clock,
            rng=rng,
            poll_interval=config.poll_interval,
            delay=config.initial_delay,
        )

    def _request(
        self,
        call: MutatingCall,
        progress: _Progress,
        *,
        tolerate_not_found: bool = False,
    ) -> Any:
        def attempt() -> Any:
            progress.attempts += 1
            try:
                return call()
            except Exception as exc:
                if tolerate_not_found and self.classifier.is_not_found(exc):
                    logger.debug("%s target already absent: %s", progress.operation.value, exc)
                    progress.already_absent = True
                    return None
                raise

        return run_with_retry(
            attempt,
            policy=self.policy,
            timeout=progress.deadline.remaining(),
            classifier=self.classifier,
            clock=self.clock,
            rng=self.rng,
            action=progress.operation.value,
        )

    def _wait_settings(
        self,
        *,
        target: Iterable[str],
        fail: Iterable[str],
        pending: Iterable[str],
        poll_interval: float | None,
        timeout: float,
        options: Mapping[str, Any],
    ) -> WaitSettings:
        """Convergence options, validated before any mutating call is issued."""
        return WaitSettings.build(
            target=frozenset(target),
            fail=frozenset(fail),
            pending=frozenset(pending),
            poll_interval=self.poll_interval if poll_interval is None else poll_interval,
            timeout=timeout,
            reported_timeout=timeout,
            delay=options.get("delay", self.delay),
            **{key: value for key, value in options.items() if key != "delay"},
        )

    def _converge(
        self,
        describe: Describe,
        identity: ResourceIdentity,
        progress: _Progress,
        settings: WaitSettings,
    ) -> Observation:
        progress.phase = Phase.CONVERGING
        settings = settings.with_timeout(progress.deadline.remaining())

        def probe() -> ProbeResult:
            progress.probes += 1
            return describe(identity)

        waiter = ConvergenceWaiter(
            settings,
            policy=self.policy,
            classifier=self.classifier,
            clock=self.clock,
            rng=self.rng,
        )
        return waiter.wait(probe)

    def create(
        self,
        call: MutatingCall,
        *,
        identify: Callable[[Any], IdentityLike],
        describe: Describe,
        target: Iterable[str],
        timeout: float,
        fail: Iterable[str] = (),
        pending: Iterable[str] = (),
        on_identity: Callable[[str], None] | None = None,
        poll_interval: float | None = None,
        **options: Any,
    ) -> ReconcileOutcome:
        """Create-then-converge.

        ``identify`` derives the composite identity from the create response;
        ``on_identity`` receives it before polling starts so a later timeout
        still leaves the caller able to address the partially created object.
        """
        progress = _Progress(Operation.CREATE, Deadline(validate_timeout(timeout), self.clock))
        settings = self._wait_settings(
            target=target,
            fail=fail,
            pending=pending,
            poll_interval=poll_interval,
            timeout=progress.deadline.timeout,
            options=options,
        )
        try:
            response = self._request(call, progress)
            identity = coerce_identity(identify(response))
            progress.identity = str(identity)
            logger.debug("create recorded identity=%s", progress.identity)
            if on_identity is not None:
                on_identity(progress.identity)
            observation = self._converge(describe, identity, progress, settings)
        except ReconcileError as exc:
            return progress.failed(exc)
        return progress.succeeded(observation.state)

    def update(
        self,
        call: MutatingCall,
        *,
        identity: IdentityLike,
        changed: bool,
        describe: Describe,
        target: Iterable[str],
        timeout: float,
        fail: Iterable[str] = (),
        pending: Iterable[str] = (),
        poll_interval: float | None = None,
        **options: Any,
    ) -> ReconcileOutcome:
        """Update-then-converge.

        When ``changed`` is false no mutating call is issued; the resource is
        still polled so the caller observes its settled state.
        """
        progress = _Progress(Operation.UPDATE, Deadline(validate_timeout(timeout), self.clock))
        settings = self._wait_settings(
            target=target,
            fail=fail,
            pending=pending,
            poll_interval=poll_interval,
            timeout=progress.deadline.timeout,
            options=options,
        )
        try:
            resolved = coerce_identity(identity)
            progress.identity = str(resolved)
            if changed:
                self._request(call, progress)
            else:
                logger.debug("update skipped mutating call identity=%s: no watched field changed", progress.identity)
                progress.skipped_request = True
            observation = self._converge(describe, resolved, progress, settings)
        except ReconcileError as exc:
            return progress.failed(exc)
        return progress.succeeded(observation.state)

    def delete(
        self,
        call: MutatingCall,
        *,
        identity: IdentityLike,
        describe: Describe,
        timeout: float,
        fail: Iterable[str] = (),
        pending: Iterable[str] = (),
        poll_interval: float | None = None,
        **options: Any,
    ) -> ReconcileOutcome:
        """Delete-then-converge-to-absence.

        A not-found answer to the delete call means the object is already gone
        and skips polling entirely.
        """
        progress = _Progress(Operation.DELETE, Deadline(validate_timeout(timeout), self.clock))
        settings = self._wait_settings(
            target=(),
            fail=fail,
            pending=pending,
            poll_interval=poll_interval,
            timeout=progress.deadline.timeout,
            options=options,
        )
        try:
            resolved = coerce_identity(identity)
            progress.identity = str(resolved)
            self._request(call, progress, tolerate_not_found=True)
            if progress.already_absent:
                return progress.succeeded(None)
            self._converge(describe, resolved, progress, settings)
        except ReconcileError as exc:
            return progress.failed(exc)
        return progress.succeeded(None)
