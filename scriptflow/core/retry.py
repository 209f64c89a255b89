"""
Retry utilities with exponential backoff.

Retries are an explicit loop with an attempt counter; delays between
attempts are suspension points that honour a cancellation token.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from scriptflow.core.cancellation import CancellationToken
from scriptflow.core.exceptions import TransientCompletionError
from scriptflow.core.logging_config import get_logger

logger = get_logger("core.retry")

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_range: Tuple[float, float] = (0.5, 1.5)  # multiplier bounds
    retryable_exceptions: Tuple[Type[Exception], ...] = (
        TransientCompletionError,
    )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def calculate_delay(
    attempt: int,
    config: RetryConfig
) -> float:
    """
    Calculate delay before next retry attempt.

    Uses exponential backoff with optional jitter, capped at ``max_delay``.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next attempt
    """
    delay = config.base_delay * (config.exponential_base ** attempt)

    if config.jitter:
        delay *= random.uniform(*config.jitter_range)

    return min(delay, config.max_delay)


async def retry_async_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[Exception, int, float], None]] = None,
    cancel_token: Optional[CancellationToken] = None,
    **kwargs: Any
) -> T:
    """
    Call an async function with retry logic.

    Args:
        func: Async function to call
        *args: Positional arguments for func
        config: Retry configuration (defaults to LLM_RETRY_CONFIG)
        on_retry: Callback invoked before each retry with (exception, attempt, delay)
        cancel_token: Token checked before each attempt and during delays
        **kwargs: Keyword arguments for func

    Returns:
        Result of the function call

    Raises:
        The last retryable exception once attempts are exhausted, or the
        first non-retryable exception immediately.
    """
    config = config or LLM_RETRY_CONFIG

    for attempt in range(config.max_attempts):
        if cancel_token:
            cancel_token.raise_if_cancelled()
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt + 1 >= config.max_attempts:
                logger.error(f"All {config.max_attempts} attempts failed. Last error: {e}")
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(
                f"Attempt {attempt + 1}/{config.max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            if on_retry:
                on_retry(e, attempt + 1, delay)

            if cancel_token:
                await cancel_token.sleep(delay)
            else:
                await asyncio.sleep(delay)

    raise RuntimeError("retry loop exited without a result")  # pragma: no cover


# Completion calls: network errors, rate limits, 5xx
LLM_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=2.0,
    max_delay=30.0,
    exponential_base=2.0,
    jitter=True,
    retryable_exceptions=(TransientCompletionError,)
)
