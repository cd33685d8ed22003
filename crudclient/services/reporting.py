"""
FailureReporter - Terminal handling of structured failures.

Every failure that leaves the request layer is dispatched here exactly
once and ends in one of three dispositions:

- SILENT: logged only
- REPORTED: logged, custom handler run, user notified
- SESSION_INVALIDATED: reported, and the caller must sign the session out
"""

import inspect
from enum import Enum
from typing import Any, Callable

from loguru import logger

from crudclient.services.errors import ApiError, FailureKind

DEFAULT_MESSAGES: dict[FailureKind, str] = {
    FailureKind.AUTHENTICATION_ERROR: "Please sign in to continue.",
    FailureKind.AUTHORIZATION_ERROR: "You do not have permission to access this.",
    FailureKind.VALIDATION_ERROR: "Please check the information you entered.",
    FailureKind.NOT_FOUND_ERROR: "The requested resource could not be found.",
    FailureKind.CONFLICT_ERROR: "This data already exists.",
    FailureKind.SERVER_ERROR: "A server error occurred.",
    FailureKind.NETWORK_ERROR: "Please check your network connection.",
    FailureKind.UNKNOWN_ERROR: "Please check your network connection.",
    FailureKind.NO_REFRESH_CREDENTIAL: "Your session has expired. Please sign in again.",
    FailureKind.RENEWAL_FAILED: "Your session has expired. Please sign in again.",
    FailureKind.REQUEST_THROTTLED: "Too many requests. Please wait a moment.",
    FailureKind.REQUEST_CANCELLED: "The request was cancelled.",
}

ERROR_SEVERITY_KINDS = frozenset(
    {FailureKind.SERVER_ERROR, FailureKind.NETWORK_ERROR, FailureKind.UNKNOWN_ERROR}
)

SESSION_KINDS = frozenset(
    {
        FailureKind.AUTHENTICATION_ERROR,
        FailureKind.NO_REFRESH_CREDENTIAL,
        FailureKind.RENEWAL_FAILED,
    }
)

Notifier = Callable[[str, str], Any]
ErrorCallback = Callable[[ApiError], Any]


class Disposition(str, Enum):
    SILENT = "SILENT"
    REPORTED = "REPORTED"
    SESSION_INVALIDATED = "SESSION_INVALIDATED"


class FailureReporter:
    """
    Usage:
        reporter = FailureReporter(notifier=lambda msg, severity: toast(msg))
        disposition = await reporter.dispatch(failure)
        if disposition is Disposition.SESSION_INVALIDATED:
            await sign_out()
    """

    def __init__(
        self,
        notifier: Notifier | None = None,
        messages: dict[FailureKind, str] | None = None,
    ):
        self._notifier = notifier
        self._messages = {**DEFAULT_MESSAGES, **(messages or {})}
        self._counts: dict[Disposition, int] = {d: 0 for d in Disposition}

    def message_for(self, kind: FailureKind) -> str:
        return self._messages.get(kind, DEFAULT_MESSAGES[FailureKind.UNKNOWN_ERROR])

    def set_message(self, kind: FailureKind, template: str) -> None:
        self._messages[kind] = template

    @staticmethod
    def severity_for(kind: FailureKind) -> str:
        return "error" if kind in ERROR_SEVERITY_KINDS else "warning"

    @staticmethod
    def disposition_for(failure: ApiError, silent: bool = False) -> Disposition:
        # Session failures always sign out, even for silent calls
        if failure.kind in SESSION_KINDS:
            return Disposition.SESSION_INVALIDATED
        if silent or failure.kind is FailureKind.REQUEST_CANCELLED:
            return Disposition.SILENT
        return Disposition.REPORTED

    async def dispatch(
        self,
        failure: ApiError,
        silent: bool = False,
        on_error: ErrorCallback | None = None,
    ) -> Disposition:
        """Log and report a terminal failure; return what happened."""
        disposition = self.disposition_for(failure, silent)
        self._counts[disposition] += 1
        self._log(failure, disposition)

        if disposition is Disposition.SILENT:
            return disposition

        if on_error is not None:
            try:
                await _maybe_await(on_error(failure))
            except Exception as e:
                logger.error(f"Custom error handler failed: {e}")

        await self._notify(failure)
        return disposition

    async def _notify(self, failure: ApiError) -> None:
        message = self.message_for(failure.kind)
        severity = self.severity_for(failure.kind)

        if self._notifier is None:
            logger.log(severity.upper(), f"Notification: {message}")
            return

        try:
            await _maybe_await(self._notifier(message, severity))
        except Exception as e:
            logger.error(f"Notifier failed: {e}")

    def _log(self, failure: ApiError, disposition: Disposition) -> None:
        record = logger.bind(
            kind=failure.kind.value,
            status_code=failure.status_code,
            disposition=disposition.value,
            details=failure.details,
        )
        if disposition is Disposition.SILENT:
            record.debug(f"Request failure ({failure.kind.value}): {failure.message}")
        elif failure.kind in ERROR_SEVERITY_KINDS:
            record.error(f"Application Error ({failure.kind.value}): {failure.message}")
        else:
            record.warning(
                f"Application Warning ({failure.kind.value}): {failure.message}"
            )

    def get_stats(self) -> dict[str, int]:
        return {d.value: count for d, count in self._counts.items()}


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
