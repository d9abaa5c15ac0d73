"""Retry, circuit breaker and watchdog guards for network-touching calls."""

from patchfleet.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerSettings,
    CircuitState,
)
from patchfleet.resilience.layer import (
    AI_PROVIDER,
    GIT_OPERATIONS,
    VCS_API,
    ResilienceLayer,
    ResiliencePolicy,
    build_layer,
    default_policies,
)
from patchfleet.resilience.retry import RetryPolicy, async_retry, compute_delay, retry_call
from patchfleet.resilience.watchdog import Watchdog, heartbeat, with_watchdog

__all__ = [
    "AI_PROVIDER",
    "GIT_OPERATIONS",
    "VCS_API",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerSettings",
    "CircuitState",
    "ResilienceLayer",
    "ResiliencePolicy",
    "RetryPolicy",
    "Watchdog",
    "async_retry",
    "build_layer",
    "compute_delay",
    "default_policies",
    "heartbeat",
    "retry_call",
    "with_watchdog",
]
