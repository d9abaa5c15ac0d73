"""Inactivity watchdog for long-running async operations.

Unlike a fixed deadline, the watchdog only aborts an operation that has gone
silent: every call to ``heartbeat()`` from inside the operation restarts the
inactivity clock. Slow work that keeps reporting progress is never killed.

The active watchdog is tracked in a context variable, so code deep inside the
operation (a subprocess reader, a streaming HTTP loop) can call the
module-level ``heartbeat()`` without being handed the watchdog. Outside a
watchdog the call is a no-op.

Example:
    >>> async def clone():
    ...     async for line in stream_progress():
    ...         heartbeat()
    >>> await Watchdog("git-clone", timeout=300).run(clone)
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from typing import TypeVar

import structlog

from patchfleet.exceptions import OperationTimeoutError

log = structlog.get_logger(__name__)

T = TypeVar("T")

_active_watchdog: ContextVar["Watchdog | None"] = ContextVar("patchfleet_active_watchdog", default=None)


def heartbeat() -> None:
    """Report progress to the innermost active watchdog, if any."""
    watchdog = _active_watchdog.get()
    if watchdog is not None:
        watchdog.beat()


class Watchdog:
    """Abort an operation once it stays silent for ``timeout`` seconds."""

    def __init__(self, name: str, timeout: float, clock: Callable[[], float] = time.monotonic) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.name = name
        self.timeout = timeout
        self._clock = clock
        self._last_beat = clock()
        self.beats = 0

    def beat(self) -> None:
        self._last_beat = self._clock()
        self.beats += 1

    def silence(self) -> float:
        """Seconds since the last heartbeat."""
        return self._clock() - self._last_beat

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under the watchdog.

        Raises:
            OperationTimeoutError: If no heartbeat arrived within ``timeout``;
                the operation task is cancelled first
        """

        async def guarded() -> T:
            _active_watchdog.set(self)
            return await operation()

        self._last_beat = self._clock()
        task = asyncio.ensure_future(guarded())
        try:
            while True:
                remaining = self.timeout - self.silence()
                if remaining <= 0:
                    log.warning("watchdog_timeout", operation=self.name, timeout=self.timeout, beats=self.beats)
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    raise OperationTimeoutError(self.name, self.timeout)
                done, _ = await asyncio.wait({task}, timeout=remaining)
                if done:
                    return task.result()
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise


async def with_watchdog(operation: Callable[[], Awaitable[T]], name: str, timeout: float) -> T:
    """Shorthand for ``Watchdog(name, timeout).run(operation)``."""
    return await Watchdog(name, timeout).run(operation)
