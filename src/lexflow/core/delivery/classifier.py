"""
Classification of delivery failures.

Failures are captured at the I/O boundary as a ``DeliveryFailure`` tagged
with a ``FailureCause``; ``classify`` maps that into an ``ErrorKind`` with
severity, retry eligibility and user-facing text. Raw exceptions are first
converted by ``failure_from_exception`` using their types.

Classification is a pure function: the same failure and context always
produce the same ClassifiedError.

Example:
    >>> failure = DeliveryFailure(FailureCause.HTTP_STATUS, status_code=404)
    >>> error = classify(failure, "submit:cap-a7x3m2q9")
    >>> error.kind, error.retryable
    (<ErrorKind.NOT_FOUND: 'not_found'>, True)
"""

import asyncio
import json
import logging
import sqlite3
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple

import httpx
from pydantic import BaseModel, Field

from lexflow.core.errors import ConfigError, StorageFault
from lexflow.core.queue.models import now_ms

logger = logging.getLogger(__name__)

DISPLAY_MS_HIGH = 8000
DISPLAY_MS_DEFAULT = 5000
ERROR_LOG_SIZE = 100


class FailureCause(str, Enum):
    """Where and how a delivery attempt failed."""

    CONFIG_MISSING = "config_missing"
    CONFIG_INVALID = "config_invalid"
    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    MALFORMED_BODY = "malformed_body"
    REJECTED = "rejected"
    STORAGE = "storage"
    UNEXPECTED = "unexpected"


class ErrorKind(str, Enum):
    CONFIG_MISSING = "config_missing"
    CONFIG_INVALID = "config_invalid"
    NOT_FOUND = "not_found"
    AUTH_DENIED = "auth_denied"
    SERVER_FAULT = "server_fault"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    NETWORK = "network"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class KindInfo(NamedTuple):
    retryable: bool
    severity: Severity
    message: str
    suggestion: str


KIND_TABLE: dict[ErrorKind, KindInfo] = {
    ErrorKind.CONFIG_MISSING: KindInfo(
        False,
        Severity.HIGH,
        "No submission endpoint configured",
        "Set submission.endpoint_url in .lexflow.json or LEXFLOW_ENDPOINT_URL",
    ),
    ErrorKind.CONFIG_INVALID: KindInfo(
        False,
        Severity.HIGH,
        "Submission endpoint URL is invalid",
        "Use a full https:// URL such as https://collector.example.org/submit",
    ),
    ErrorKind.NOT_FOUND: KindInfo(
        True,
        Severity.MEDIUM,
        "Endpoint not found",
        "Check the configured endpoint URL",
    ),
    ErrorKind.AUTH_DENIED: KindInfo(
        False,
        Severity.HIGH,
        "Access denied by the endpoint",
        "Check the endpoint configuration and credentials",
    ),
    ErrorKind.SERVER_FAULT: KindInfo(
        True,
        Severity.MEDIUM,
        "Endpoint server error",
        "Try again later",
    ),
    ErrorKind.TIMEOUT: KindInfo(
        True,
        Severity.LOW,
        "Request timed out",
        "Try again; the endpoint may be slow",
    ),
    ErrorKind.MALFORMED_RESPONSE: KindInfo(
        True,
        Severity.MEDIUM,
        "Invalid response from the endpoint (expected JSON)",
        "Check that the endpoint returns a JSON object",
    ),
    ErrorKind.NETWORK: KindInfo(
        True,
        Severity.MEDIUM,
        "Network error",
        "Check your internet connection",
    ),
    ErrorKind.STORAGE: KindInfo(
        True,
        Severity.HIGH,
        "Capture storage unavailable",
        "Free disk space or check permissions; captures are kept in memory meanwhile",
    ),
    ErrorKind.UNKNOWN: KindInfo(
        True,
        Severity.MEDIUM,
        "Submission failed",
        "Try again; if it keeps failing check the endpoint logs",
    ),
}

# Message patterns for failures the endpoint reported in its own body
_REJECTION_PATTERNS: list[tuple[ErrorKind, tuple[str, ...]]] = [
    (ErrorKind.NOT_FOUND, ("not found", "não encontrad", "nao encontrad")),
    (
        ErrorKind.AUTH_DENIED,
        ("access denied", "acesso negado", "unauthorized", "forbidden", "permission denied"),
    ),
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
]


@dataclass(frozen=True)
class DeliveryFailure:
    """
    A failure captured at the I/O boundary.

    Attributes:
        cause: What went wrong
        status_code: HTTP status, for http_status failures
        message: Text reported by the endpoint or the transport
    """

    cause: FailureCause
    status_code: int | None = None
    message: str = ""


class ClassifiedError(BaseModel):
    """A failure mapped into the error taxonomy."""

    kind: ErrorKind
    severity: Severity
    retryable: bool
    message: str = Field(..., description="User-facing message")
    suggestion: str = Field(default="", description="Actionable next step")
    context: str = Field(default="", description="Operation context (e.g. 'submit:cap-...')")
    status_code: int | None = None
    detail: str | None = Field(default=None, description="Technical detail for logs")

    @property
    def display_ms(self) -> int:
        """How long a notification for this error stays on screen."""
        return DISPLAY_MS_HIGH if self.severity == Severity.HIGH else DISPLAY_MS_DEFAULT

    def to_result(self) -> dict[str, Any]:
        """Shape stored in ``CaptureItem.submission_result``."""
        data = self.model_dump(mode="json")
        data["success"] = False
        return data


def failure_from_exception(exc: BaseException) -> DeliveryFailure:
    """
    Convert a raw exception into a DeliveryFailure by exception type.

    Args:
        exc: Exception raised during a delivery attempt

    Returns:
        DeliveryFailure tagged with the matching cause
    """
    message = str(exc) or type(exc).__name__

    # Timeouts first: httpx timeouts are TransportErrors, TimeoutError is an OSError
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return DeliveryFailure(FailureCause.TIMEOUT, message=message)

    if isinstance(exc, httpx.HTTPStatusError):
        return DeliveryFailure(
            FailureCause.HTTP_STATUS,
            status_code=exc.response.status_code,
            message=message,
        )

    if isinstance(exc, (httpx.RequestError, ConnectionError)):
        return DeliveryFailure(FailureCause.TRANSPORT, message=message)

    if isinstance(exc, json.JSONDecodeError):
        return DeliveryFailure(FailureCause.MALFORMED_BODY, message=message)

    if isinstance(exc, (StorageFault, sqlite3.Error)):
        return DeliveryFailure(FailureCause.STORAGE, message=message)

    if isinstance(exc, ConfigError):
        return DeliveryFailure(FailureCause.CONFIG_INVALID, message=message)

    return DeliveryFailure(FailureCause.UNEXPECTED, message=message)


def _kind_for_status(status_code: int | None) -> ErrorKind:
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in (401, 403):
        return ErrorKind.AUTH_DENIED
    if status_code is not None and 500 <= status_code < 600:
        return ErrorKind.SERVER_FAULT
    return ErrorKind.UNKNOWN


def _kind_for_rejection(message: str) -> ErrorKind:
    lowered = message.lower()
    for kind, patterns in _REJECTION_PATTERNS:
        if any(p in lowered for p in patterns):
            return kind
    return ErrorKind.SERVER_FAULT


_CAUSE_KINDS: dict[FailureCause, ErrorKind] = {
    FailureCause.CONFIG_MISSING: ErrorKind.CONFIG_MISSING,
    FailureCause.CONFIG_INVALID: ErrorKind.CONFIG_INVALID,
    FailureCause.TIMEOUT: ErrorKind.TIMEOUT,
    FailureCause.TRANSPORT: ErrorKind.NETWORK,
    FailureCause.MALFORMED_BODY: ErrorKind.MALFORMED_RESPONSE,
    FailureCause.STORAGE: ErrorKind.STORAGE,
    FailureCause.UNEXPECTED: ErrorKind.UNKNOWN,
}


def classify(error: DeliveryFailure | BaseException, context: str = "") -> ClassifiedError:
    """
    Map a failure into the error taxonomy.

    Args:
        error: Structured failure, or a raw exception to convert first
        context: Operation context, carried through to the result

    Returns:
        ClassifiedError with kind, severity, retry eligibility and text
    """
    failure = error if isinstance(error, DeliveryFailure) else failure_from_exception(error)

    if failure.cause == FailureCause.HTTP_STATUS:
        kind = _kind_for_status(failure.status_code)
    elif failure.cause == FailureCause.REJECTED:
        kind = _kind_for_rejection(failure.message)
    else:
        kind = _CAUSE_KINDS[failure.cause]

    info = KIND_TABLE[kind]

    if failure.cause == FailureCause.REJECTED and failure.message:
        # The endpoint's own explanation is the most useful thing to show
        message = failure.message
    elif kind == ErrorKind.UNKNOWN and failure.status_code is not None:
        message = f"{info.message} (HTTP {failure.status_code})"
    else:
        message = info.message

    return ClassifiedError(
        kind=kind,
        severity=info.severity,
        retryable=info.retryable,
        message=message,
        suggestion=info.suggestion,
        context=context,
        status_code=failure.status_code,
        detail=failure.message or None,
    )


class LoggedError(BaseModel):
    error: ClassifiedError
    logged_at: int


class ErrorStats(BaseModel):
    total_errors: int = 0
    error_kinds: dict[str, int] = Field(default_factory=dict)
    last_error: LoggedError | None = None


class ErrorLog:
    """
    Bounded in-memory log of classified errors.

    Keeps the most recent ``max_entries`` errors; older ones are dropped.

    Example:
        >>> log = ErrorLog()
        >>> log.record(classify(DeliveryFailure(FailureCause.TIMEOUT), "submit:cap-1"))
        >>> log.stats().error_kinds
        {'timeout': 1}
    """

    def __init__(self, max_entries: int = ERROR_LOG_SIZE) -> None:
        self._entries: deque[LoggedError] = deque(maxlen=max_entries)

    def record(self, error: ClassifiedError) -> None:
        self._entries.append(LoggedError(error=error, logged_at=now_ms()))
        logger.warning(
            f"{error.kind.value} in {error.context or 'unknown context'}: "
            f"{error.message}" + (f" ({error.detail})" if error.detail else "")
        )

    def entries(self) -> list[LoggedError]:
        """Logged errors, oldest first."""
        return list(self._entries)

    def stats(self) -> ErrorStats:
        counts = Counter(entry.error.kind.value for entry in self._entries)
        return ErrorStats(
            total_errors=len(self._entries),
            error_kinds=dict(counts),
            last_error=self._entries[-1] if self._entries else None,
        )

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "ClassifiedError",
    "DeliveryFailure",
    "ErrorKind",
    "ErrorLog",
    "ErrorStats",
    "FailureCause",
    "KIND_TABLE",
    "LoggedError",
    "Severity",
    "classify",
    "failure_from_exception",
]
