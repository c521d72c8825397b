"""Reconciliation error taxonomy and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

FAILED_TO_REACH_TARGET = "Failed to reach target status. Last status: {state}."
WAIT_TIMEOUT = "Timeout in {seconds:g} seconds. Got: {got} Expected: {expected}"
STILL_EXISTS = "Resource still exists after {seconds:g} seconds. Last status: {got}"
DEFAULT_FAILURE = "{action} failed: {cause}"


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    OPERATION_ERROR = 5
    RETRIES_EXHAUSTED = 6
    CONVERGENCE_FAILED = 7
    CONVERGENCE_TIMEOUT = 8
    IDENTITY_ERROR = 9


@dataclass
class ReconcileError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""
    phase: str = ""
    identity: str = ""

    def with_context(self, *, phase: str = "", identity: str = "") -> ReconcileError:
        """Fill in phase/identity without overwriting context set closer to the failure."""
        if phase and not self.phase:
            self.phase = phase
        if identity and not self.identity:
            self.identity = identity
        return self

    def __str__(self) -> str:
        text = self.message
        context = ", ".join(
            f"{key}={value}" for key, value in (("phase", self.phase), ("identity", self.identity)) if value
        )
        if context:
            text = f"{text} [{context}]"
        if self.hint:
            return f"{text} Hint: {self.hint}"
        return text


@dataclass
class FatalConfigurationError(ReconcileError):
    code: ExitCode = ExitCode.CONFIG_ERROR


@dataclass
class FatalOperationError(ReconcileError):
    code: ExitCode = ExitCode.OPERATION_ERROR
    attempts: int = 1


@dataclass
class RetriesExhaustedError(ReconcileError):
    code: ExitCode = ExitCode.RETRIES_EXHAUSTED
    attempts: int = 0
    last_error: BaseException | None = None
    history: list[object] = field(default_factory=list)


@dataclass
class ConvergenceFailedError(ReconcileError):
    code: ExitCode = ExitCode.CONVERGENCE_FAILED
    state: str = ""


@dataclass
class ConvergenceTimeoutError(ReconcileError):
    code: ExitCode = ExitCode.CONVERGENCE_TIMEOUT
    last_state: str | None = None
    expected: tuple[str, ...] = ()
    timeout: float = 0.0


@dataclass
class IdentityFormatError(ReconcileError):
    code: ExitCode = ExitCode.IDENTITY_ERROR
    value: str = ""


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
