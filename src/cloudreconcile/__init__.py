"""Asynchronous resource reconciliation engine for cloud-provider plugins."""

from .backoff import BackoffPolicy
from .classifier import ApiError, ErrorClassifier
from .errors import (
    ConvergenceFailedError,
    ConvergenceTimeoutError,
    FatalConfigurationError,
    FatalOperationError,
    IdentityFormatError,
    ReconcileError,
    RetriesExhaustedError,
)
from .identity import ResourceIdentity, build_client_token, decode_id, encode_id
from .lifecycle import OutcomeStatus, ReconcileOutcome, Reconciler, changed_fields
from .poller import CHECKSET, ConvergenceState, Observation, wait_for_state
from .retry import run_with_retry

__all__ = [
    "ApiError",
    "BackoffPolicy",
    "build_client_token",
    "changed_fields",
    "CHECKSET",
    "ConvergenceFailedError",
    "ConvergenceState",
    "ConvergenceTimeoutError",
    "decode_id",
    "encode_id",
    "ErrorClassifier",
    "FatalConfigurationError",
    "FatalOperationError",
    "IdentityFormatError",
    "Observation",
    "OutcomeStatus",
    "ReconcileError",
    "ReconcileOutcome",
    "Reconciler",
    "ResourceIdentity",
    "RetriesExhaustedError",
    "run_with_retry",
    "wait_for_state",
]
