"""
Service layer exceptions and the failure taxonomy.
"""

from enum import Enum
from typing import Any

import httpx


class FailureKind(str, Enum):
    """Every failure surfaced by the request layer maps to exactly one kind."""

    NETWORK_ERROR = "NETWORK_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND_ERROR = "NOT_FOUND_ERROR"
    CONFLICT_ERROR = "CONFLICT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    NO_REFRESH_CREDENTIAL = "NO_REFRESH_CREDENTIAL"
    RENEWAL_FAILED = "RENEWAL_FAILED"
    REQUEST_THROTTLED = "REQUEST_THROTTLED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"


class ServiceError(Exception):
    """Base exception for service layer errors."""

    kind: FailureKind = FailureKind.UNKNOWN_ERROR

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class ApiError(ServiceError):
    """
    Structured failure: the normalized form of anything that went wrong
    while talking to the remote service.

    Attributes are read-only once constructed.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        status_code: int | None = None,
        cause: BaseException | Any = None,
        details: dict[str, Any] | None = None,
    ):
        self._kind = kind
        self._message = message
        self._status_code = status_code
        self._cause = cause
        self._details = dict(details or {})
        super().__init__(message)

    @property
    def kind(self) -> FailureKind:  # type: ignore[override]
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def status_code(self) -> int | None:
        return self._status_code

    @property
    def cause(self) -> Any:
        return self._cause

    @property
    def details(self) -> dict[str, Any]:
        return dict(self._details)

    @property
    def is_timeout(self) -> bool:
        """Request timed out, either at the transport or as HTTP 408."""
        if self._status_code == 408:
            return True
        return isinstance(self._cause, (httpx.TimeoutException, TimeoutError))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self._kind.value,
            "status_code": self._status_code,
            "message": self._message,
            "details": self._details,
        }

    def __repr__(self) -> str:
        return (
            f"ApiError(kind={self._kind.value}, status_code={self._status_code}, "
            f"message={self._message!r})"
        )


class RenewalFailed(ServiceError):
    """Credential renewal did not produce a new access credential."""

    kind = FailureKind.RENEWAL_FAILED

    def __init__(self, message: str = "Token refresh failed", cause: Any = None):
        self.cause = cause
        super().__init__(message, service_id="auth")


class NoRefreshCredential(RenewalFailed):
    """Renewal was requested but no refresh credential is stored."""

    kind = FailureKind.NO_REFRESH_CREDENTIAL

    def __init__(self):
        super().__init__("No refresh token available")


class RequestThrottled(ServiceError):
    """Call rejected because another one for the same key is already queued."""

    kind = FailureKind.REQUEST_THROTTLED

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Request throttled: {key}")


class RequestCancelled(ServiceError):
    """The underlying operation was cancelled before it settled."""

    kind = FailureKind.REQUEST_CANCELLED

    def __init__(self, key: str, reason: str = "cancelled"):
        self.key = key
        self.reason = reason
        super().__init__(f"Request {reason}: {key}")
