"""
Unit tests for the shared retry helper.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from shared.retry import RetryConfig, retry_call


class TestRetryCall:
    """Test cases for retry_call."""

    @pytest.fixture
    def sleep(self):
        """Sleep stub recording requested delays."""
        return AsyncMock()

    @pytest.mark.asyncio
    async def test_returns_first_success(self, sleep):
        func = AsyncMock(return_value="ok")

        result = await retry_call(func, RetryConfig.fixed(3, 1.0), sleep=sleep)

        assert result == "ok"
        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retries_with_fixed_delay(self, sleep):
        func = AsyncMock(side_effect=[RuntimeError("1"), RuntimeError("2"), "ok"])
        on_retry = MagicMock()

        result = await retry_call(func, RetryConfig.fixed(2, 1.5), sleep=sleep, on_retry=on_retry)

        assert result == "ok"
        assert func.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.5, 1.5]
        assert [call.args[0] for call in on_retry.call_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_reraises_last_error(self, sleep):
        errors = [RuntimeError("first"), RuntimeError("last")]
        func = AsyncMock(side_effect=errors)

        with pytest.raises(RuntimeError) as exc_info:
            await retry_call(func, RetryConfig.fixed(1, 0), sleep=sleep)

        assert exc_info.value is errors[1]

    @pytest.mark.asyncio
    async def test_zero_retries_single_attempt(self, sleep):
        func = AsyncMock(side_effect=ValueError("no"))

        with pytest.raises(ValueError):
            await retry_call(func, RetryConfig.fixed(0, 1.0), sleep=sleep)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_are_not_retried(self, sleep):
        func = AsyncMock(side_effect=KeyError("x"))

        with pytest.raises(KeyError):
            await retry_call(func, RetryConfig.fixed(3, 0), exceptions=(ValueError,), sleep=sleep)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self, sleep):
        func = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await retry_call(func, RetryConfig.fixed(3, 0), sleep=sleep)

        assert func.await_count == 1


class TestRetryConfig:
    """Test cases for RetryConfig."""

    def test_fixed_counts_extra_attempts(self):
        config = RetryConfig.fixed(2, 0.5)

        assert config.max_attempts == 3
        assert config.delay == 0.5

    def test_negative_delay_clamped(self):
        assert RetryConfig.fixed(1, -1.0).delay == 0.0

    def test_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
