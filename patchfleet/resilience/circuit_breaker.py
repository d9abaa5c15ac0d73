"""Circuit breaker for failing dependencies.

A breaker guards one operation class (for example ``git-operations`` or
``vcs-api``) and moves between three states:

    CLOSED     calls go through; consecutive failures are counted
    OPEN       calls fail fast with CircuitOpenError, the operation is not invoked
    HALF_OPEN  after ``open_duration`` one probe call at a time is let through;
               ``success_threshold`` consecutive successes close the circuit,
               any failure reopens it

Breakers are process-local. ``CircuitBreakerRegistry`` hands out one breaker
per operation class so every caller of that class shares the same state.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import structlog

from patchfleet.exceptions import (
    BudgetExceededError,
    CancelledWorkError,
    CircuitOpenError,
    InvalidTransitionError,
    NotFoundError,
)

log = structlog.get_logger(__name__)

T = TypeVar("T")

_NOT_A_DEPENDENCY_FAILURE = (InvalidTransitionError, NotFoundError, BudgetExceededError, CancelledWorkError)


def counts_as_failure(error: BaseException) -> bool:
    """Local bookkeeping errors say nothing about the dependency's health."""
    return not isinstance(error, _NOT_A_DEPENDENCY_FAILURE)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerSettings:
    failure_threshold: int = 5
    success_threshold: int = 2
    open_duration: float = 60.0


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a breaker, for status output."""

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_state_change: float


class CircuitBreaker:
    """Fail-fast guard around a single operation class."""

    def __init__(
        self,
        name: str,
        settings: CircuitBreakerSettings | None = None,
        is_failure: Callable[[BaseException], bool] = counts_as_failure,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.settings = settings or CircuitBreakerSettings()
        self._is_failure = is_failure
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_state_change = clock()
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN period reads as HALF_OPEN."""
        if self._state == CircuitState.OPEN and self._open_elapsed():
            self._set_state(CircuitState.HALF_OPEN)
        return self._state

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=self.name,
            state=self.state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_state_change=self._last_state_change,
        )

    def reset(self) -> None:
        self._set_state(CircuitState.CLOSED)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Invoke ``operation`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with a
                probe already in flight; ``operation`` is not invoked
        """
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(self.name, self._retry_after())

        probing = state == CircuitState.HALF_OPEN
        if probing:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._probe_in_flight = True
            log.info("circuit_probe", circuit=self.name)

        try:
            result = await operation()
        except Exception as e:
            if self._is_failure(e):
                self._record_failure(e)
            raise
        finally:
            if probing:
                self._probe_in_flight = False

        self._record_success()
        return result

    def _record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.settings.success_threshold:
                self._set_state(CircuitState.CLOSED)
        else:
            self._failure_count = 0

    def _record_failure(self, error: BaseException) -> None:
        if self._state == CircuitState.HALF_OPEN:
            log.warning("circuit_probe_failed", circuit=self.name, error=str(error))
            self._set_state(CircuitState.OPEN)
            return

        self._failure_count += 1
        if self._state == CircuitState.CLOSED and self._failure_count >= self.settings.failure_threshold:
            self._set_state(CircuitState.OPEN)

    def _set_state(self, state: CircuitState) -> None:
        if state == self._state and state != CircuitState.OPEN:
            return
        previous = self._state
        self._state = state
        self._last_state_change = self._clock()
        self._success_count = 0
        if state == CircuitState.CLOSED:
            self._failure_count = 0

        log_method = log.warning if state == CircuitState.OPEN else log.info
        log_method(
            "circuit_state_changed",
            circuit=self.name,
            from_state=previous.value,
            to_state=state.value,
            failures=self._failure_count,
        )

    def _open_elapsed(self) -> bool:
        return self._clock() - self._last_state_change >= self.settings.open_duration

    def _retry_after(self) -> float:
        return max(0.0, self.settings.open_duration - (self._clock() - self._last_state_change))


class CircuitBreakerRegistry:
    """One breaker per operation class, created on first use."""

    def __init__(
        self,
        default_settings: CircuitBreakerSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_settings = default_settings or CircuitBreakerSettings()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str, settings: CircuitBreakerSettings | None = None) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, settings or self.default_settings, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def snapshots(self) -> list[CircuitSnapshot]:
        return [breaker.snapshot() for breaker in self._breakers.values()]

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
