"""Uniform resilience wrapper for network-touching operations.

``ResilienceLayer.execute`` composes the three guards in a fixed order:

    circuit breaker( retry( watchdog( operation ) ) )

The breaker sits outside the retry loop, so one logical call that exhausts
its retries counts as a single failure, and an open circuit rejects the call
before any attempt is made. The watchdog wraps each individual attempt.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

import structlog

from patchfleet.config.settings import HardeningConfig
from patchfleet.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitBreakerSettings
from patchfleet.resilience.retry import RetryPolicy, retry_call
from patchfleet.resilience.watchdog import Watchdog

log = structlog.get_logger(__name__)

T = TypeVar("T")

GIT_OPERATIONS = "git-operations"
VCS_API = "vcs-api"
AI_PROVIDER = "ai-provider"


@dataclass(frozen=True)
class ResiliencePolicy:
    """Which guards apply to an operation class.

    Attributes:
        operation_class: Circuit breaker name; calls sharing it share health
        retry: Retry policy, or None for a single attempt
        use_circuit_breaker: Route the call through the class's breaker
        timeout: Watchdog inactivity timeout in seconds, or None
    """

    operation_class: str
    retry: RetryPolicy | None = None
    use_circuit_breaker: bool = True
    timeout: float | None = None

    def with_retry(self, retry: RetryPolicy | None) -> "ResiliencePolicy":
        return replace(self, retry=retry)


class ResilienceLayer:
    """Executes operations under retry, circuit breaker and watchdog policies."""

    def __init__(self, breakers: CircuitBreakerRegistry | None = None) -> None:
        self.breakers = breakers or CircuitBreakerRegistry()

    async def execute(self, operation: Callable[[], Awaitable[T]], policy: ResiliencePolicy) -> T:
        """Run ``operation`` under ``policy``.

        Args:
            operation: Zero-argument coroutine function; re-invoked per attempt
            policy: Guards to apply

        Raises:
            CircuitOpenError: The class's circuit is open
            OperationTimeoutError: The last attempt went silent too long
            Exception: Whatever the last attempt raised
        """

        async def attempt() -> T:
            if policy.timeout is None:
                return await operation()
            return await Watchdog(policy.operation_class, policy.timeout).run(operation)

        async def retried() -> T:
            if policy.retry is None:
                return await attempt()
            return await retry_call(attempt, policy.retry, operation_name=policy.operation_class)

        if not policy.use_circuit_breaker:
            return await retried()
        return await self.breakers.get(policy.operation_class).call(retried)


def default_policies(config: HardeningConfig) -> dict[str, ResiliencePolicy]:
    """Build the standard policies for git, VCS API and AI provider calls."""
    retry = RetryPolicy(
        max_retries=config.retry.max_retries,
        base_delay=config.retry.base_delay_ms / 1000.0,
        max_delay=config.retry.max_delay_ms / 1000.0,
        jitter=config.retry.jitter,
    )
    return {
        GIT_OPERATIONS: ResiliencePolicy(GIT_OPERATIONS, retry=retry, timeout=config.watchdog.git_timeout),
        VCS_API: ResiliencePolicy(VCS_API, retry=retry, timeout=config.watchdog.api_timeout),
        # Processor runs may spend money; a failed run is never replayed automatically.
        AI_PROVIDER: ResiliencePolicy(AI_PROVIDER, retry=None, timeout=config.watchdog.processor_timeout),
    }


def build_layer(config: HardeningConfig) -> ResilienceLayer:
    """Resilience layer whose breakers use the configured thresholds."""
    settings = CircuitBreakerSettings(
        failure_threshold=config.circuit_breaker.failure_threshold,
        success_threshold=config.circuit_breaker.success_threshold,
        open_duration=config.circuit_breaker.open_duration_ms / 1000.0,
    )
    return ResilienceLayer(CircuitBreakerRegistry(settings))
