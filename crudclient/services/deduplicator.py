"""
RequestDeduplicator - Prevents duplicate concurrent requests.

When multiple callers request the same resource simultaneously,
only one actual request is made and the result is shared. Entries
that outlive the pending timeout are evicted by a periodic sweep.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from crudclient.services.errors import RequestCancelled

T = TypeVar("T")

READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def create_request_key(method: str, path: str, data: Any = None) -> str:
    """
    Build the fingerprint for a logical request.

    Payloads are serialized canonically so equal bodies always produce
    equal keys regardless of dict ordering.
    """
    payload = ""
    if data is not None:
        payload = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return f"{method.upper()}:{path}:{payload}"


def dedupe_by_default(method: str) -> bool:
    """Reads are merged unless the caller opts out; writes only on opt-in."""
    return method.upper() in READ_METHODS


class CancellationToken:
    """Cancellation signal handed to every deduplicated operation."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        for callback in self._callbacks:
            callback()
        self._callbacks.clear()


Operation = Callable[[CancellationToken], Awaitable[T]]


@dataclass
class InFlightEntry:
    """A request currently being executed."""

    fingerprint: str
    token: CancellationToken
    task: "asyncio.Task[Any]"
    started_at: datetime = field(default_factory=datetime.now)

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or datetime.now()) - self.started_at


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    When multiple coroutines request the same key simultaneously,
    only one actual request is made. All callers await the same result.

    Usage:
        dedup = RequestDeduplicator()

        async def fetch_data(url: str):
            return await dedup.run_deduplicated(
                create_request_key("GET", url),
                lambda token: http_client.get(url),
            )
    """

    def __init__(
        self,
        pending_timeout: timedelta = timedelta(seconds=30),
        cleanup_interval: timedelta = timedelta(seconds=60),
        auto_sweep: bool = True,
        debug: bool = False,
    ):
        self._in_flight: dict[str, InFlightEntry] = {}
        self._pending_timeout = pending_timeout
        self._cleanup_interval = cleanup_interval
        self._auto_sweep = auto_sweep
        self._debug = debug
        self._stats = DeduplicatorStats()
        self._scheduler: AsyncIOScheduler | None = None

    async def run_deduplicated(self, fingerprint: str, operation: Operation[T]) -> T:
        """
        Execute operation with deduplication.

        If an operation with the same fingerprint is already in flight,
        wait for and return its result instead of starting a new one.

        Args:
            fingerprint: Unique identifier for this logical request
            operation: Async function receiving a CancellationToken

        Returns:
            Result of the operation (either fresh or from the in-flight one)

        Raises:
            RequestCancelled: the shared operation was cancelled or evicted
        """
        self._ensure_sweeper()

        entry = self._in_flight.get(fingerprint)
        if entry is not None:
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: Waiting for in-flight request: {fingerprint[:50]}...")
        else:
            self._stats.total += 1
            self._log(f"NEW: Starting request: {fingerprint[:50]}...")
            token = CancellationToken()
            task = asyncio.create_task(
                self._execute_and_cleanup(fingerprint, token, operation)
            )
            entry = InFlightEntry(fingerprint=fingerprint, token=token, task=task)
            self._in_flight[fingerprint] = entry

        try:
            # Shielded so a cancelled waiter does not cancel the shared request
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if entry.task.cancelled() and entry.token.cancelled:
                raise RequestCancelled(
                    fingerprint, entry.token.reason or "cancelled"
                ) from None
            raise

    async def _execute_and_cleanup(
        self,
        fingerprint: str,
        token: CancellationToken,
        operation: Operation[T],
    ) -> T:
        """Execute operation and clean up when done."""
        try:
            return await operation(token)
        finally:
            current = self._in_flight.get(fingerprint)
            if current is not None and current.token is token:
                del self._in_flight[fingerprint]
            self._log(f"DONE: Request completed: {fingerprint[:50]}...")

    def _drop(self, entry: InFlightEntry, reason: str) -> None:
        self._in_flight.pop(entry.fingerprint, None)
        entry.token.cancel(reason)
        entry.task.cancel()

    def cancel(self, fingerprint: str) -> bool:
        """Cancel an in-flight request."""
        entry = self._in_flight.get(fingerprint)
        if entry is None:
            return False
        self._drop(entry, "cancelled")
        self._stats.cancelled += 1
        self._log(f"CANCEL: Request cancelled: {fingerprint[:50]}...")
        return True

    def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        entries = list(self._in_flight.values())
        for entry in entries:
            self._drop(entry, "cancelled")
        self._stats.cancelled += len(entries)
        if entries:
            self._log(f"CANCEL_ALL: {len(entries)} requests cancelled")
        return len(entries)

    def sweep(self, now: datetime | None = None) -> int:
        """Force-cancel entries pending longer than the timeout."""
        now = now or datetime.now()
        expired = [
            entry
            for entry in self._in_flight.values()
            if entry.age(now) > self._pending_timeout
        ]
        for entry in expired:
            self._drop(entry, "expired")
        self._stats.evicted += len(expired)
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired requests")
        return len(expired)

    async def _sweep_job(self) -> None:
        self.sweep()

    def _ensure_sweeper(self) -> None:
        if not self._auto_sweep or self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._sweep_job,
            trigger="interval",
            seconds=self._cleanup_interval.total_seconds(),
            id="dedup_sweep_job",
            name="In-flight request sweeper",
            replace_existing=True,
        )
        self._scheduler.start()
        self._log(
            f"Sweeper started: every {self._cleanup_interval.total_seconds():.0f}s"
        )

    def close(self) -> int:
        """Stop the sweeper and cancel everything still in flight."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        return self.cancel_all()

    def is_pending(self, fingerprint: str) -> bool:
        return fingerprint in self._in_flight

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight requests."""
        return list(self._in_flight.keys())

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Total unique requests made
        self.deduplicated: int = 0  # Requests that were deduplicated
        self.cancelled: int = 0
        self.evicted: int = 0  # Removed by the sweep
        self.in_flight: int = 0  # Current in-flight requests

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "cancelled": self.cancelled,
            "evicted": self.evicted,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }
