"""Tests for retry with exponential backoff."""

from unittest.mock import AsyncMock, patch

import pytest

from patchfleet.exceptions import GitOperationError, NetworkError, OperationTimeoutError, RateLimitError
from patchfleet.resilience.retry import RetryPolicy, async_retry, compute_delay, retry_call


class Flaky:
    """Fails with the given errors in order, then returns ``"ok"``."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.fixture
def no_sleep():
    with patch("patchfleet.resilience.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestComputeDelay:
    def test_exponential_and_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert [compute_delay(n, policy) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=60.0, jitter=True)

        for _ in range(50):
            assert 4.0 <= compute_delay(1, policy) <= 5.0

    def test_rate_limit_retry_after_wins(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)

        assert compute_delay(0, policy, RateLimitError("slow down", retry_after=12.0)) == 12.0
        assert compute_delay(0, policy, RateLimitError("slow down", retry_after=120.0)) == 30.0

    def test_negative_settings_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=-1.0)


class TestRetryCall:
    @pytest.mark.asyncio
    async def test_n_transient_failures_make_n_plus_one_attempts(self, no_sleep):
        operation = Flaky(NetworkError("reset"), NetworkError("reset"), NetworkError("reset"))
        policy = RetryPolicy(max_retries=5, jitter=False, should_retry=lambda e: isinstance(e, NetworkError))

        assert await retry_call(operation, policy) == "ok"
        assert operation.calls == 4
        assert no_sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, no_sleep):
        operation = Flaky(GitOperationError("bad ref"))

        with pytest.raises(GitOperationError):
            await retry_call(operation, RetryPolicy(max_retries=5))

        assert operation.calls == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self, no_sleep):
        operation = Flaky(NetworkError("one"), NetworkError("two"), NetworkError("three"))

        with pytest.raises(NetworkError, match="three"):
            await retry_call(operation, RetryPolicy(max_retries=2, jitter=False))

        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_timeouts_are_retried_by_default(self, no_sleep):
        operation = Flaky(OperationTimeoutError("git fetch", 30.0))

        assert await retry_call(operation, RetryPolicy(max_retries=1)) == "ok"
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_zero_retries_is_single_attempt(self, no_sleep):
        operation = Flaky(NetworkError("down"))

        with pytest.raises(NetworkError):
            await retry_call(operation, RetryPolicy(max_retries=0))
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_sleeps_use_backoff(self, no_sleep):
        operation = Flaky(NetworkError("a"), NetworkError("b"))

        await retry_call(operation, RetryPolicy(max_retries=3, base_delay=0.5, jitter=False))

        assert [call.args[0] for call in no_sleep.await_args_list] == [0.5, 1.0]


class TestAsyncRetryDecorator:
    @pytest.mark.asyncio
    async def test_decorated_function_retried(self, no_sleep):
        calls = []

        @async_retry(max_retries=2, jitter=False)
        async def fetch(remote: str) -> str:
            calls.append(remote)
            if len(calls) < 2:
                raise NetworkError("flaky")
            return f"fetched {remote}"

        assert await fetch("origin") == "fetched origin"
        assert calls == ["origin", "origin"]
        assert fetch.__name__ == "fetch"
