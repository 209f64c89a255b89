"""
Tests for Retry Utilities

Tests for scriptflow/core/retry.py
"""

import pytest

from scriptflow.core.cancellation import CancellationToken
from scriptflow.core.exceptions import (
    CompletionRejectedError,
    PipelineCancelledError,
    TransientCompletionError,
)
from scriptflow.core.retry import RetryConfig, calculate_delay, retry_async_call

NO_DELAY = RetryConfig(max_retries=2, base_delay=0.0, jitter=False)


class Flaky:
    """Fails with the queued errors, then returns ``result``."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestRetryAsyncCall:
    """Tests for retry_async_call."""

    @pytest.mark.asyncio
    async def test_recovers_from_transient_errors(self):
        func = Flaky(TransientCompletionError("rate limited"), TransientCompletionError("503"))
        retries = []

        result = await retry_async_call(
            func, config=NO_DELAY, on_retry=lambda e, attempt, delay: retries.append(attempt)
        )

        assert result == "ok"
        assert func.calls == 3
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_raises_after_last_attempt(self):
        func = Flaky(*(TransientCompletionError(f"fail {i}") for i in range(5)))

        with pytest.raises(TransientCompletionError, match="fail 2"):
            await retry_async_call(func, config=NO_DELAY)

        assert func.calls == NO_DELAY.max_attempts

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_immediate(self):
        func = Flaky(CompletionRejectedError("bad request", status_code=400))

        with pytest.raises(CompletionRejectedError):
            await retry_async_call(func, config=NO_DELAY)

        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_calling(self):
        token = CancellationToken()
        token.cancel("stop")
        func = Flaky()

        with pytest.raises(PipelineCancelledError, match="stop"):
            await retry_async_call(func, config=NO_DELAY, cancel_token=token)

        assert func.calls == 0

    @pytest.mark.asyncio
    async def test_passes_arguments(self):
        async def add(a, b=0):
            return a + b

        assert await retry_async_call(add, 1, b=2, config=NO_DELAY) == 3


class TestCalculateDelay:
    """Tests for calculate_delay."""

    def test_exponential_growth(self):
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, max_delay=60.0, jitter=False)

        assert [calculate_delay(n, config) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, max_delay=5.0, jitter=False)

        assert calculate_delay(10, config) == 5.0

    def test_jitter_stays_in_range(self):
        config = RetryConfig(base_delay=2.0, exponential_base=1.0, max_delay=60.0, jitter=True)

        for _ in range(20):
            assert 1.0 <= calculate_delay(0, config) <= 3.0
