"""Error taxonomy for the routing and resilience layer.

Every failure surfaced to a caller is a ``QueryGateError`` carrying an
``ErrorKind``. ``failure_code`` is the short string the transport layer
reports back to clients.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Categories of failure a request can end in."""

    VALIDATION = "validation"
    CAPACITY = "capacity"
    TIMEOUT = "timeout"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_FAILURE = "upstream_failure"
    INTERNAL = "internal"
    UNAUTHORIZED = "unauthorized"


# Caller-facing failure codes
FAILURE_CODES = {
    ErrorKind.VALIDATION: "invalid_request",
    ErrorKind.CAPACITY: "queue_full",
    ErrorKind.TIMEOUT: "timeout",
    ErrorKind.UPSTREAM_UNAVAILABLE: "provider_error",
    ErrorKind.UPSTREAM_FAILURE: "provider_error",
    ErrorKind.INTERNAL: "internal_error",
    ErrorKind.UNAUTHORIZED: "unauthorized",
}


class QueryGateError(Exception):
    """Base class for all request failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, request_id: Optional[str] = None):
        super().__init__(message)
        self.request_id = request_id

    @property
    def failure_code(self) -> str:
        return FAILURE_CODES[self.kind]


class QueryValidationError(QueryGateError):
    """Raised for malformed or missing input. Never queued."""

    kind = ErrorKind.VALIDATION


class QueueFullError(QueryGateError):
    """Raised when the request queue is at its maximum depth."""

    kind = ErrorKind.CAPACITY


class QueueTimeoutError(QueryGateError):
    """Raised when a queued or batched request waits past its deadline."""

    kind = ErrorKind.TIMEOUT


class CircuitOpenError(QueryGateError):
    """Raised when a circuit breaker is open and the request is rejected."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class ProviderError(QueryGateError):
    """Raised when the model or embedding provider call fails."""

    kind = ErrorKind.UPSTREAM_FAILURE

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message, request_id=request_id)
        self.status_code = status_code


class InternalPipelineError(QueryGateError):
    """Raised when optimization or classification hits an unexpected defect."""

    kind = ErrorKind.INTERNAL


class UnauthorizedError(QueryGateError):
    """Raised when an anonymous caller hits a rule that requires a login."""

    kind = ErrorKind.UNAUTHORIZED
