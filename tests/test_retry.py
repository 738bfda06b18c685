"""Tests for the retry policy."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from converge.config import Config
from converge.provider import PermanentProviderError, TransientProviderError
from converge.retry import RetryExhaustedError, RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_invalid_values(self) -> None:
        """Test constructor validation."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=-1)
        with pytest.raises(ValueError):
            RetryPolicy(jitter=1.5)

    def test_delay_grows_and_is_capped(self) -> None:
        """Test exponential backoff without jitter."""
        policy = RetryPolicy(base_delay=2, max_delay=10, jitter=0)

        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 10]

    def test_jitter_bounds(self) -> None:
        """Test that jitter adds at most the configured fraction."""
        policy = RetryPolicy(base_delay=10, max_delay=10, jitter=0.5)

        for _ in range(50):
            assert 10 <= policy.delay_for(1) <= 15

    def test_from_config(self) -> None:
        """Test that the schedule is read from configuration."""
        config = Config(
            retry_max_attempts=7,
            retry_backoff_base_seconds=1.5,
            retry_backoff_max_seconds=20,
        )

        policy = RetryPolicy.from_config(config)

        assert (policy.max_attempts, policy.base_delay, policy.max_delay) == (7, 1.5, 20)

    @pytest.mark.asyncio
    async def test_success_first_attempt(self) -> None:
        """Test that a successful operation runs once."""
        operation = AsyncMock(return_value="ok")

        assert await RetryPolicy(base_delay=0).run(operation) == "ok"
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transient_then_success(self) -> None:
        """Test that transient errors are retried with backoff."""
        operation = AsyncMock(
            side_effect=[TransientProviderError("busy", 429), TransientProviderError("busy"), 42]
        )
        attempts: list[int] = []
        policy = RetryPolicy(max_attempts=3, base_delay=1, max_delay=10, jitter=0)

        with patch("converge.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await policy.run(operation, on_attempt=attempts.append)

        assert result == 42
        assert attempts == [1, 2, 3]
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_exhausted(self) -> None:
        """Test that a persistent transient error raises RetryExhaustedError."""
        error = TransientProviderError("throttled", 429)
        operation = AsyncMock(side_effect=error)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await RetryPolicy(max_attempts=2, base_delay=0).run(operation, describe="create x")

        assert exc_info.value.attempts == 2
        assert exc_info.value.last_error is error
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_not_retried(self) -> None:
        """Test that permanent errors propagate immediately."""
        operation = AsyncMock(side_effect=PermanentProviderError("bad request", 400))

        with pytest.raises(PermanentProviderError):
            await RetryPolicy(max_attempts=5, base_delay=0).run(operation)

        operation.assert_awaited_once()
