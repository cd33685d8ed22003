"""
Throttler / Debouncer - Per-key rate shaping for outbound calls.

- Throttler: at most one call per `limit` seconds per key; one extra call
  is queued for the end of the window, anything beyond that is rejected
  with RequestThrottled.
- Debouncer: only the last call within `delay` seconds runs; earlier
  calls are rejected with RequestCancelled.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from crudclient.services.errors import RequestCancelled, RequestThrottled

T = TypeVar("T")


@dataclass
class ThrottleState:
    last_executed: float = float("-inf")
    is_throttled: bool = False


class Throttler:
    """
    Usage:
        throttler = Throttler()
        result = await throttler.run("search", lambda: client.get("/users"), 1.0)
    """

    def __init__(self):
        self._state: dict[str, ThrottleState] = {}

    async def run(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        limit: float,
    ) -> T:
        state = self._state.setdefault(key, ThrottleState())
        elapsed = time.monotonic() - state.last_executed

        if elapsed >= limit:
            state.last_executed = time.monotonic()
            state.is_throttled = False
            return await fn()

        if state.is_throttled:
            logger.debug(f"Request throttled: {key}")
            raise RequestThrottled(key)

        state.is_throttled = True
        await asyncio.sleep(limit - elapsed)

        state.last_executed = time.monotonic()
        state.is_throttled = False
        return await fn()

    def count(self) -> int:
        return len(self._state)

    def clear(self) -> None:
        self._state.clear()


class Debouncer:
    """
    Usage:
        debouncer = Debouncer()
        result = await debouncer.run(f"search_{query}", lambda: search(query), 0.3)
    """

    def __init__(self):
        self._timers: dict[str, asyncio.Future[Any]] = {}

    async def run(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        delay: float = 0.3,
    ) -> T:
        previous = self._timers.get(key)
        if previous is not None and not previous.done():
            previous.set_exception(RequestCancelled(key, "superseded"))

        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._timers[key] = waiter
        handle = asyncio.get_running_loop().call_later(
            delay, lambda: waiter.done() or waiter.set_result(None)
        )

        try:
            await waiter
        finally:
            handle.cancel()
            if self._timers.get(key) is waiter:
                del self._timers[key]

        return await fn()

    def count(self) -> int:
        return len(self._timers)

    def clear(self) -> None:
        for key, waiter in self._timers.items():
            if not waiter.done():
                waiter.set_exception(RequestCancelled(key, "cleared"))
        self._timers.clear()
