"""Transient-error classification for vendor API failures."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from cloudreconcile.errors import ReconcileError

THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "Throttling.User",
        "Throttling.Api",
        "Rejected.Throttling",
        "ThrottlingException",
        "TooManyRequests",
        "RequestLimitExceeded",
        "QpsLimitExceeded",
    }
)
SERVICE_BUSY_CODES = frozenset(
    {
        "ServiceUnavailable",
        "ServiceIsStopping",
        "ServiceIsConfiguring",
        "BackendServer.configuring",
        "SystemBusy",
        "OperationBusy",
        "InternalError",
        "OTSServerBusy",
        "OTSServerUnavailable",
        "OTSPartitionUnavailable",
        "OTSInternalServerError",
        "OTSTimeout",
        "OTSTableNotReady",
        "OTSTunnelServerUnavailable",
    }
)
CONFLICT_CODES = frozenset(
    {
        "OperationConflict",
        "InvalidOperation.Conflict",
        "ConcurrentUpdateBucketFailed",
        "ConcurrentTaskExceeded",
        "IncorrectInstanceStatus",
        "IncorrectDiskStatus",
        "IncorrectDBInstanceState",
        "OperationDenied.DBInstanceStatus",
        "OperationDenied.DBClusterStatus",
        "OTSRowOperationConflict",
        "LastTokenProcessing",
        "TaskConflict",
        "OperationInProgress",
        "TaskInProgress",
    }
)
NOT_FOUND_CODES = frozenset(
    {
        "NotFound",
        "ResourceNotfound",
        "ResourceNotFound",
        "Instance.Notfound",
        "Forbidden.InstanceNotFound",
        "EntityNotExist",
    }
)
VALIDATION_PREFIXES = (
    "InvalidParameter",
    "InvalidParam",
    "MissingParameter",
    "IllegalParameter",
    "ValidationError",
    "MalformedRequest",
    "InvalidAction",
)
AUTHORIZATION_PREFIXES = (
    "Forbidden",
    "NoPermission",
    "AccessDenied",
    "Unauthorized",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "InvalidSecurityToken",
)
TRANSIENT_MESSAGE_MARKERS = ("Client.Timeout", "Too frequent table operations.")
NOT_FOUND_MESSAGE = "instance is not found"
FATAL_STATUSES = frozenset({400, 401, 403, 404})
RETRYABLE_STATUSES = frozenset({429})

_POST_TIMEOUT = re.compile(r'^Post "?https://')
_SERVER_CODE = re.compile(r"^code: 5\d{2}")
_MAX_CHAIN = 16


@dataclass
class ApiError(Exception):
    """Structured vendor API failure raised by mutating calls and describe probes."""

    code: str
    message: str = ""
    status: int | None = None
    request_id: str = ""

    def __str__(self) -> str:
        text = f"Code: {self.code} Message: {self.message}"
        if self.status is not None:
            text = f"{text} Status: {self.status}"
        if self.request_id:
            text = f"{text} RequestId: {self.request_id}"
        return text


@dataclass(frozen=True)
class ErrorDetails:
    code: str
    message: str
    status: int | None


def _iter_chain(err: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen and len(seen) < _MAX_CHAIN:
        seen.add(id(current))
        yield current
        current = current.__cause__


def _details_of(item: BaseException) -> ErrorDetails | None:
    if isinstance(item, ReconcileError):
        return None
    code = getattr(item, "code", None)
    status = None
    for attribute in ("status", "status_code", "http_status"):
        value = getattr(item, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            status = value
            break
    if not isinstance(code, str):
        code = ""
    if not code and status is None:
        return None
    message = getattr(item, "message", None)
    if not isinstance(message, str):
        message = str(item)
    return ErrorDetails(code=code, message=message, status=status)


def error_details(err: BaseException) -> ErrorDetails | None:
    """Return the first code/status carried along the exception chain."""
    for item in _iter_chain(err):
        details = _details_of(item)
        if details is not None:
            return details
    return None


class ErrorClassifier:
    def __init__(
        self,
        *,
        extra_retryable_codes: Iterable[str] = (),
        extra_fatal_codes: Iterable[str] = (),
    ) -> None:
        self.extra_retryable_codes = frozenset(code for code in extra_retryable_codes if code)
        self.extra_fatal_codes = frozenset(code for code in extra_fatal_codes if code)

    def is_not_found(self, err: BaseException) -> bool:
        for item in _iter_chain(err):
            details = _details_of(item)
            if details is None:
                continue
            code = details.code
            if code in NOT_FOUND_CODES or code.endswith((".NotFound", ".Notfound")) or code.startswith("NoSuch"):
                return True
            if details.status == 404:
                return True
            message = details.message
            if NOT_FOUND_MESSAGE in message.lower() or message.startswith("ResourceNotfound"):
                return True
        return False

    def is_already_exists(self, err: BaseException) -> bool:
        for item in _iter_chain(err):
            details = _details_of(item)
            if details is None:
                continue
            code = details.code.lower()
            message = details.message.lower()
            if "alreadyexist" in code or "duplicate" in code:
                return True
            if "already exist" in message or "duplicate" in message:
                return True
            if details.status == 409 and "exist" in message:
                return True
        return False

    def matches(self, err: BaseException, codes: Iterable[str]) -> bool:
        """Expected-error check: code equality or prefix, or code mentioned in the message."""
        expected = [code for code in codes if code]
        if not expected:
            return False
        for item in _iter_chain(err):
            details = _details_of(item)
            if details is not None:
                if details.code and details.code.startswith(tuple(expected)):
                    return True
                if any(code in details.message for code in expected):
                    return True
                if details.status is not None and str(details.status) in expected:
                    return True
            elif not isinstance(item, ReconcileError) and any(code in str(item) for code in expected):
                return True
        return False

    def _is_fatal_code(self, code: str) -> bool:
        if not code:
            return False
        if code in self.extra_fatal_codes or code in NOT_FOUND_CODES:
            return True
        if code.endswith((".NotFound", ".Notfound")) or code.startswith("NoSuch"):
            return True
        return code.startswith(VALIDATION_PREFIXES) or code.startswith(AUTHORIZATION_PREFIXES)

    def _is_retryable_code(self, code: str) -> bool:
        if not code:
            return False
        if code in self.extra_retryable_codes:
            return True
        if code in THROTTLING_CODES or "Throttling" in code:
            return True
        return code in SERVICE_BUSY_CODES or code in CONFLICT_CODES

    @staticmethod
    def _is_retryable_message(message: str) -> bool:
        if any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS):
            return True
        return bool(_POST_TIMEOUT.match(message) or _SERVER_CODE.match(message))

    def is_retryable(self, err: BaseException) -> bool:
        """Return True only for errors known to be transient; unknown errors are fatal."""
        if isinstance(err, ReconcileError):
            return False
        details = error_details(err)
        if details is not None and self._is_fatal_code(details.code):
            return False
        if any(isinstance(item, (TimeoutError, ConnectionError)) for item in _iter_chain(err)):
            return True
        if details is None:
            return self._is_retryable_message(str(err))

        if self._is_retryable_code(details.code):
            return True
        if self._is_retryable_message(details.message):
            return True
        if details.status is not None:
            if details.status in FATAL_STATUSES:
                return False
            if details.status in RETRYABLE_STATUSES or 500 <= details.status <= 599:
                return True
        return False


DEFAULT_CLASSIFIER = ErrorClassifier()
