"""
FailureClassifier - Maps raw failures onto the FailureKind taxonomy.

Handles:
- httpx transport errors (connect, read, timeouts) -> NETWORK_ERROR
- HTTP status errors / responses / bare status codes -> per-status kinds
- Layer exceptions (renewal, throttling, cancellation) -> their own kinds
- Anything else -> UNKNOWN_ERROR with the original message kept
"""

from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from crudclient.services.errors import ApiError, FailureKind, ServiceError

NETWORK_ERROR_MESSAGE = "Please check your network connection."

_STATUS_KINDS: dict[int, FailureKind] = {
    401: FailureKind.AUTHENTICATION_ERROR,
    403: FailureKind.AUTHORIZATION_ERROR,
    404: FailureKind.NOT_FOUND_ERROR,
    409: FailureKind.CONFLICT_ERROR,
    422: FailureKind.VALIDATION_ERROR,
    500: FailureKind.SERVER_ERROR,
}


class ApiErrorBody(BaseModel):
    """Error body returned by the CRUD service."""

    message: str | list[str] | None = None
    statusCode: int | None = None
    error: str | None = None

    def canonical_message(self) -> str | None:
        if isinstance(self.message, list):
            return str(self.message[0]) if self.message else None
        return self.message or None


def kind_for_status(status: int) -> FailureKind:
    """Resolve the failure kind for an HTTP status code."""
    if status in _STATUS_KINDS:
        return _STATUS_KINDS[status]
    if 400 <= status < 500:
        return FailureKind.VALIDATION_ERROR
    if 500 <= status < 600:
        return FailureKind.SERVER_ERROR
    return FailureKind.UNKNOWN_ERROR


def extract_message(response: httpx.Response) -> str | None:
    """Pull the canonical message out of an error response body."""
    try:
        payload = response.json()
    except (ValueError, httpx.ResponseNotRead, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return ApiErrorBody.model_validate(payload).canonical_message()
    except ValidationError:
        return None


def _from_response(response: httpx.Response, cause: Any) -> ApiError:
    status = response.status_code
    message = extract_message(response) or f"HTTP {status}: {response.reason_phrase}"
    return ApiError(
        kind_for_status(status),
        message,
        status_code=status,
        cause=cause,
    )


def classify(raw: Any) -> ApiError:
    """
    Normalize a raw failure into an ApiError.

    Total: every input maps to exactly one kind and this never raises.
    """
    try:
        return _classify(raw)
    except Exception as e:  # pragma: no cover - decoding guard
        return ApiError(
            FailureKind.UNKNOWN_ERROR,
            _message_of(raw) or str(e),
            cause=raw,
        )


def _classify(raw: Any) -> ApiError:
    match raw:
        case ApiError():
            return raw
        case httpx.HTTPStatusError(response=response):
            return _from_response(response, raw)
        case httpx.Response():
            return _from_response(raw, raw)
        case bool():
            return ApiError(FailureKind.UNKNOWN_ERROR, str(raw), cause=raw)
        case int(status):
            return ApiError(
                kind_for_status(status),
                f"HTTP {status}",
                status_code=status,
                cause=raw,
            )
        case httpx.TransportError() | ConnectionError() | TimeoutError():
            return ApiError(
                FailureKind.NETWORK_ERROR,
                NETWORK_ERROR_MESSAGE,
                cause=raw,
                details={"error": _message_of(raw)},
            )
        case ServiceError():
            return ApiError(raw.kind, str(raw), cause=raw)
        case _:
            return ApiError(
                FailureKind.UNKNOWN_ERROR,
                _message_of(raw) or NETWORK_ERROR_MESSAGE,
                cause=raw,
            )


def _message_of(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, BaseException):
        return str(raw) or type(raw).__name__
    return ""
