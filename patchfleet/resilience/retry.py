"""Retry utilities for handling transient failures.

Retries async operations with capped exponential backoff and optional jitter.
A predicate decides which errors are transient; everything else propagates on
the first failure without any delay.

Backoff Formula:
    delay = min(base_delay * 2 ** attempt, max_delay)
    plus, with jitter enabled, a random 0-25% of that delay.
    attempt is 0 for the first retry, so with base_delay=1.0: 1s, 2s, 4s, ...

    A RateLimitError that carries ``retry_after`` uses that value instead,
    still capped at max_delay.

Example:
    >>> policy = RetryPolicy(max_retries=3, base_delay=0.5)
    >>> result = await retry_call(lambda: client.get("/repos"), policy, operation="vcs-api")

    >>> @async_retry(max_retries=5)
    ... async def fetch_refs(remote: str) -> str:
    ...     ...
"""

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from patchfleet.exceptions import RateLimitError, is_retryable

log = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


@dataclass(frozen=True)
class RetryPolicy:
    """How an operation is retried.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retrying)
        base_delay: Delay in seconds before the first retry
        max_delay: Cap in seconds on any single delay
        jitter: Add up to 25% random jitter to each delay
        should_retry: Predicate deciding whether an error is transient
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True
    should_retry: Callable[[BaseException], bool] = field(default=is_retryable)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")


def compute_delay(attempt: int, policy: RetryPolicy, error: BaseException | None = None) -> float:
    """Delay in seconds before retry number ``attempt`` (0-based)."""
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        return min(max(error.retry_after, 0.0), policy.max_delay)

    delay = min(policy.base_delay * (2**attempt), policy.max_delay)
    if policy.jitter:
        delay += delay * JITTER_RATIO * random.random()
    return delay


async def retry_call(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation",
) -> T:
    """Call ``operation`` until it succeeds, a non-transient error occurs, or retries run out.

    Args:
        operation: Zero-argument coroutine function to invoke
        policy: Retry policy
        operation_name: Name used in log events

    Returns:
        The operation's result

    Raises:
        The last error raised by the operation
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if not policy.should_retry(e):
                raise
            if attempt >= policy.max_retries:
                log.error(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error=str(e),
                )
                raise

            delay = compute_delay(attempt, policy, e)
            log.warning(
                "retry_attempt",
                operation=operation_name,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay=round(delay, 3),
                error=str(e),
            )
            attempt += 1
            await asyncio.sleep(delay)


def async_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    should_retry: Callable[[BaseException], bool] = is_retryable,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Decorator form of ``retry_call`` for async functions."""
    policy = RetryPolicy(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        jitter=jitter,
        should_retry=should_retry,
    )

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await retry_call(lambda: func(*args, **kwargs), policy, operation_name=func.__name__)

        return wrapper

    return decorator
