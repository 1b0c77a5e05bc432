"""
Retry with exponential backoff for reasoning-model calls.

Connection drops, rate limits and overloaded servers are retried; a
Retry-After hint from the server takes precedence over the computed delay.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from uitest_agent.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def retry_after_seconds(error: Exception) -> Optional[float]:
    """Server-suggested wait from an HTTP error's Retry-After header, if any."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


@dataclass
class RetryPolicy:
    """When and how long to wait between attempts."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the delay, applied both ways

    retryable_exceptions: tuple = (Exception,)
    non_retryable_exceptions: tuple = ()

    def get_delay(self, attempt: int) -> float:
        """Backoff for a 0-based attempt number, capped and jittered."""
        base = min(self.initial_delay * self.multiplier ** attempt, self.max_delay)
        spread = base * self.jitter
        return max(0.0, base + random.uniform(-spread, spread))

    def delay_for(self, error: Exception, attempt: int) -> float:
        """Delay before the next attempt; Retry-After wins when present."""
        hinted = retry_after_seconds(error)
        if hinted is not None:
            return min(hinted, self.max_delay)
        return self.get_delay(attempt)

    def is_retryable(self, error: Exception) -> bool:
        if isinstance(error, self.non_retryable_exceptions):
            return False
        return isinstance(error, self.retryable_exceptions)


class RetryExhaustedError(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    **kwargs: Any,
) -> T:
    """
    Await func(*args, **kwargs), retrying retryable failures.

    Args:
        func: Coroutine function
        policy: Retry policy (default RetryPolicy())
        on_retry: Called with (attempt number, error) before each wait

    Returns:
        The first successful result

    Raises:
        RetryExhaustedError: When the last allowed attempt fails
        Exception: Non-retryable errors propagate unchanged
    """
    policy = policy or RetryPolicy()
    attempts = policy.max_retries + 1
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            last_error = e
            if attempt == attempts - 1:
                break

            delay = policy.delay_for(e, attempt)
            logger.warning(
                "Model call failed, retrying",
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay=round(delay, 2),
                error_type=type(e).__name__,
                error=str(e),
            )
            if on_retry:
                on_retry(attempt + 1, e)
            await asyncio.sleep(delay)

    logger.error("Retries exhausted", attempts=attempts, error=str(last_error))
    raise RetryExhaustedError(attempts, last_error)
