"""
Tests for resilience module.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from uitest_agent.resilience import (
    RetryExhaustedError,
    RetryPolicy,
    retry_after_seconds,
    retry_with_backoff,
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def fast_policy(**kwargs):
    return RetryPolicy(initial_delay=0.0, jitter=0.0, **kwargs)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_policy(self):
        """Test default retry policy values."""
        policy = RetryPolicy()

        assert policy.max_retries == 3
        assert policy.initial_delay == 1.0
        assert policy.max_delay == 60.0
        assert policy.multiplier == 2.0

    def test_get_delay_exponential(self):
        """Test exponential backoff delay calculation."""
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=100.0, jitter=0.0)

        assert policy.get_delay(0) == 1.0
        assert policy.get_delay(1) == 2.0
        assert policy.get_delay(2) == 4.0

    def test_get_delay_capped_at_max(self):
        """Test delay is capped at max_delay."""
        policy = RetryPolicy(initial_delay=10.0, multiplier=10.0, max_delay=30.0, jitter=0.0)
        assert policy.get_delay(2) == 30.0

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=0.5)
        for _ in range(20):
            assert 0.5 <= policy.get_delay(0) <= 1.5

    def test_is_retryable(self):
        """Test error retryability check."""
        policy = RetryPolicy(
            retryable_exceptions=(ValueError, TypeError),
            non_retryable_exceptions=(RuntimeError,),
        )

        assert policy.is_retryable(ValueError("test")) is True
        assert policy.is_retryable(TypeError("test")) is True
        assert policy.is_retryable(RuntimeError("test")) is False
        assert policy.is_retryable(KeyError("test")) is False


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    def test_first_try(self):
        func = AsyncMock(return_value="ok")
        assert run_async(retry_with_backoff(func, 1, policy=fast_policy(), key="v")) == "ok"
        func.assert_awaited_once_with(1, key="v")

    def test_retries_then_succeeds(self):
        func = AsyncMock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
        retries = []

        result = run_async(retry_with_backoff(
            func,
            policy=fast_policy(retryable_exceptions=(ConnectionError,)),
            on_retry=lambda attempt, error: retries.append(attempt),
        ))

        assert result == "ok"
        assert retries == [1, 2]
        assert func.await_count == 3

    def test_exhausted(self):
        func = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            run_async(retry_with_backoff(func, policy=fast_policy(max_retries=2)))

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert func.await_count == 3

    def test_non_retryable_raised_unchanged(self):
        func = AsyncMock(side_effect=ValueError("bad request"))
        policy = fast_policy(retryable_exceptions=(ConnectionError,))

        with pytest.raises(ValueError, match="bad request"):
            run_async(retry_with_backoff(func, policy=policy))

        assert func.await_count == 1


class RateLimited(Exception):
    """HTTP-style error carrying response headers."""

    def __init__(self, headers):
        super().__init__("rate limited")
        self.response = SimpleNamespace(headers=headers)


class TestRetryAfter:
    """Tests for server-suggested delays."""

    def test_header_parsed(self):
        assert retry_after_seconds(RateLimited({"retry-after": "2.5"})) == 2.5

    def test_missing_or_invalid_header(self):
        assert retry_after_seconds(ValueError("no response")) is None
        assert retry_after_seconds(RateLimited({})) is None
        assert retry_after_seconds(RateLimited({"retry-after": "soon"})) is None

    def test_hint_overrides_backoff(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=0.0, max_delay=10.0)
        assert policy.delay_for(RateLimited({"retry-after": "4"}), 0) == 4.0
        assert policy.delay_for(RateLimited({"retry-after": "120"}), 0) == 10.0
        assert policy.delay_for(ConnectionError("down"), 1) == 2.0
