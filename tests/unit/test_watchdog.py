"""Tests for the inactivity watchdog."""

import asyncio

import pytest

from patchfleet.exceptions import OperationTimeoutError
from patchfleet.resilience.watchdog import Watchdog, heartbeat, with_watchdog


class TestWatchdog:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick() -> int:
            return 42

        assert await Watchdog("quick", timeout=1.0).run(quick) == 42

    @pytest.mark.asyncio
    async def test_silent_operation_is_aborted(self):
        cancelled = asyncio.Event()

        async def hang() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(OperationTimeoutError) as exc_info:
            await Watchdog("git-fetch", timeout=0.05).run(hang)

        assert cancelled.is_set()
        assert exc_info.value.operation == "git-fetch"
        assert isinstance(exc_info.value, TimeoutError)

    @pytest.mark.asyncio
    async def test_heartbeats_keep_slow_work_alive(self):
        async def chatty() -> str:
            for _ in range(6):
                await asyncio.sleep(0.03)
                heartbeat()
            return "done"

        watchdog = Watchdog("processor", timeout=0.1)

        assert await watchdog.run(chatty) == "done"
        assert watchdog.beats == 6

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        async def broken() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await with_watchdog(broken, "broken", timeout=1.0)

    def test_heartbeat_outside_watchdog_is_noop(self):
        heartbeat()

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            Watchdog("x", timeout=0)

    @pytest.mark.asyncio
    async def test_outer_cancellation_cancels_operation(self):
        cancelled = asyncio.Event()

        async def hang() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        task = asyncio.create_task(Watchdog("hang", timeout=5.0).run(hang))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert cancelled.is_set()
