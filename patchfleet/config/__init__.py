"""Configuration for patchfleet.

Example:
    >>> from patchfleet.config import FleetSettings
    >>> settings = FleetSettings.from_yaml("patchfleet.yaml")
    >>> settings.parallel.max_concurrent_agents
    3
"""

from patchfleet.config.settings import (
    BudgetConfig,
    CircuitBreakerConfig,
    FleetSettings,
    GitConfig,
    HardeningConfig,
    LoggingConfig,
    ParallelConfig,
    RetryConfig,
    VCSConfig,
    WatchdogConfig,
)

__all__ = [
    "BudgetConfig",
    "CircuitBreakerConfig",
    "FleetSettings",
    "GitConfig",
    "HardeningConfig",
    "LoggingConfig",
    "ParallelConfig",
    "RetryConfig",
    "VCSConfig",
    "WatchdogConfig",
]
