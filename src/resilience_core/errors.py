"""Failure taxonomy and transient-failure classification."""

from __future__ import annotations

from enum import StrEnum
from typing import ClassVar

import httpx

from resilience_core.constants import (
    RATE_LIMIT_MARKERS,
    RATE_LIMIT_STATUS,
    SERVER_ERROR_MIN_STATUS,
    TIMEOUT_STATUS,
)


class FailureKind(StrEnum):
    """Transport/status classification of a dependency failure."""

    CONNECTION_RESET = "connection_reset"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    OTHER = "other"


TRANSIENT_KINDS = frozenset(
    {
        FailureKind.CONNECTION_RESET,
        FailureKind.TIMEOUT,
        FailureKind.SERVER_ERROR,
        FailureKind.RATE_LIMITED,
    }
)


class ResilienceError(Exception):
    """Base exception for everything raised by resilience_core."""


class DependencyFailure(ResilienceError, RuntimeError):
    """Structured failure of an external dependency call.

    When ``kind`` is omitted it is derived from ``status_code``, falling back
    to ``default_kind`` for statuses that carry no classification.
    """

    default_kind: ClassVar[FailureKind] = FailureKind.OTHER

    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind | None = None,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """Initialize failure metadata.

        Args:
            message: Human-readable error message.
            kind: Transport/status classification of the failure. Derived
                from ``status_code`` when omitted.
            status_code: Optional HTTP (or HTTP-like) status observed.
            response_body: Optional response payload text.
        """
        super().__init__(message)
        if kind is None:
            kind = self.default_kind
            if status_code is not None:
                derived = kind_for_status(status_code)
                if derived is not FailureKind.OTHER:
                    kind = derived
        self.kind = kind
        self.status_code = status_code
        self.response_body = response_body

    @classmethod
    def from_status(
        cls,
        status_code: int,
        message: str | None = None,
        *,
        response_body: str | None = None,
    ) -> DependencyFailure:
        """Build a transient or terminal failure for an HTTP status."""
        kind = kind_for_status(status_code)
        failure_type = TransientError if kind in TRANSIENT_KINDS else TerminalError
        return failure_type(
            message or f"Dependency returned HTTP {status_code}.",
            kind=kind,
            status_code=status_code,
            response_body=response_body,
        )


class TransientError(DependencyFailure):
    """Generic retry-safe transient dependency failure."""

    default_kind = FailureKind.SERVER_ERROR


class TerminalError(DependencyFailure):
    """Dependency failure that must never be retried."""


class OperationTimeoutError(DependencyFailure):
    """Raised when an operation misses its deadline.

    Attributes:
        timeout: Deadline in seconds that was exceeded.
    """

    def __init__(self, message: str, *, timeout: float) -> None:
        super().__init__(message, kind=FailureKind.TIMEOUT)
        self.timeout = timeout


class BatchAbortedError(ResilienceError):
    """Raised when a bounded batch stops on its first failing item.

    The original failure is chained as ``__cause__`` and kept on ``failure``.

    Attributes:
        index: Input position of the failing item.
        item: The failing input item.
        failure: Exception raised while processing ``item``.
    """

    def __init__(self, index: int, item: object, failure: BaseException) -> None:
        self.index = index
        self.item = item
        self.failure = failure
        super().__init__(
            f"batch aborted at item {index}: {failure.__class__.__name__}: {failure}"
        )


class ServiceUnavailableError(ResilienceError):
    """Boundary condition for a dependency that is temporarily unusable.

    Raised instead of a raw failure when the circuit is open or transient
    retries are exhausted, so callers can present an actionable message.

    Attributes:
        dependency: Name of the unavailable dependency.
        retry_after: Seconds until a new attempt is sensible, when known.
    """

    def __init__(self, dependency: str, *, retry_after: float | None = None) -> None:
        self.dependency = dependency
        self.retry_after = retry_after
        message = f"{dependency} is temporarily unavailable"
        if retry_after is not None:
            message = f"{message}; retry after {retry_after:g}s"
        super().__init__(message)


def kind_for_status(status_code: int) -> FailureKind:
    """Classify an HTTP status code."""
    if status_code == RATE_LIMIT_STATUS:
        return FailureKind.RATE_LIMITED
    if status_code == TIMEOUT_STATUS:
        return FailureKind.TIMEOUT
    if status_code >= SERVER_ERROR_MIN_STATUS:
        return FailureKind.SERVER_ERROR
    return FailureKind.OTHER


def failure_status_code(error: BaseException) -> int | None:
    """Extract a numeric status code from a failure, if it carries one."""
    if isinstance(error, DependencyFailure):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attribute in ("status_code", "status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _kind_from_message(error: BaseException) -> FailureKind:
    message = str(error).lower()
    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMITED
    if "econnreset" in message:
        return FailureKind.CONNECTION_RESET
    if "etimedout" in message:
        return FailureKind.TIMEOUT
    return FailureKind.OTHER


def classify_failure(error: BaseException) -> FailureKind:
    """Map any exception onto a ``FailureKind``."""
    if isinstance(error, DependencyFailure):
        return error.kind
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(error, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return FailureKind.CONNECTION_RESET
    if isinstance(error, ConnectionError):
        return FailureKind.CONNECTION_RESET

    status_code = failure_status_code(error)
    if status_code is not None:
        kind = kind_for_status(status_code)
        if kind is not FailureKind.OTHER:
            return kind
    return _kind_from_message(error)


def is_transient(error: BaseException) -> bool:
    """Return true when ``error`` is eligible for retry.

    Connection resets, timeouts, HTTP >= 500 and rate-limit signals are
    transient. ``TransientError`` and ``TerminalError`` override the
    classification of their ``kind``.
    """
    if isinstance(error, TransientError):
        return True
    if isinstance(error, TerminalError):
        return False
    return classify_failure(error) in TRANSIENT_KINDS
