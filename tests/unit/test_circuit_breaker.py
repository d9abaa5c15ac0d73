"""Tests for the circuit breaker."""

import asyncio

import pytest

from patchfleet.exceptions import CircuitOpenError, InvalidTransitionError, NetworkError
from patchfleet.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerSettings,
    CircuitState,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def fail() -> None:
    raise NetworkError("connection refused")


async def succeed() -> str:
    return "ok"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    settings = CircuitBreakerSettings(failure_threshold=3, success_threshold=2, open_duration=60.0)
    return CircuitBreaker("vcs-api", settings, clock=clock)


async def trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.settings.failure_threshold):
        with pytest.raises(NetworkError):
            await breaker.call(fail)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_fails_fast(self, breaker):
        await trip(breaker)
        calls = []

        async def tracked() -> str:
            calls.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(tracked)

        assert calls == []
        assert breaker.state == CircuitState.OPEN
        assert exc_info.value.retry_after == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        for _ in range(2):
            with pytest.raises(NetworkError):
                await breaker.call(fail)
        await breaker.call(succeed)
        for _ in range(2):
            with pytest.raises(NetworkError):
                await breaker.call(fail)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_after_open_duration(self, breaker, clock):
        await trip(breaker)
        clock.advance(59.0)
        assert breaker.state == CircuitState.OPEN
        clock.advance(1.0)
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_exactly_one_probe_at_a_time(self, breaker, clock):
        await trip(breaker)
        clock.advance(60.0)
        release = asyncio.Event()
        probes = []

        async def slow_probe() -> str:
            probes.append(1)
            await release.wait()
            return "ok"

        probe = asyncio.create_task(breaker.call(slow_probe))
        await asyncio.sleep(0)
        with pytest.raises(CircuitOpenError):
            await breaker.call(slow_probe)
        release.set()

        assert await probe == "ok"
        assert probes == [1]

    @pytest.mark.asyncio
    async def test_probe_successes_close_circuit(self, breaker, clock):
        await trip(breaker)
        clock.advance(60.0)

        await breaker.call(succeed)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.call(succeed)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_probe_reopens(self, breaker, clock):
        await trip(breaker)
        clock.advance(60.0)

        with pytest.raises(NetworkError):
            await breaker.call(fail)

        assert breaker.state == CircuitState.OPEN
        clock.advance(30.0)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_bookkeeping_errors_do_not_trip(self, breaker):
        async def stale() -> None:
            raise InvalidTransitionError("acme/widgets#1", "queued", "merged")

        for _ in range(5):
            with pytest.raises(InvalidTransitionError):
                await breaker.call(stale)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_and_snapshot(self, breaker):
        await trip(breaker)

        snapshot = breaker.snapshot()
        assert snapshot.state == CircuitState.OPEN
        assert snapshot.name == "vcs-api"
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED


class TestRegistry:
    def test_one_breaker_per_class(self):
        registry = CircuitBreakerRegistry(CircuitBreakerSettings(failure_threshold=1))

        assert registry.get("git-operations") is registry.get("git-operations")
        assert registry.get("git-operations") is not registry.get("vcs-api")
        assert registry.get("vcs-api").settings.failure_threshold == 1

    @pytest.mark.asyncio
    async def test_reset_all(self):
        registry = CircuitBreakerRegistry(CircuitBreakerSettings(failure_threshold=1))
        with pytest.raises(NetworkError):
            await registry.get("vcs-api").call(fail)

        assert [s.state for s in registry.snapshots()] == [CircuitState.OPEN]
        registry.reset_all()
        assert [s.state for s in registry.snapshots()] == [CircuitState.CLOSED]
