"""
Retry Helper - exponential backoff for remote calls

Only exceptions listed in `exceptions` are retried; anything else propagates
on the first failure. An exception carrying a `retry_after` attribute (seconds)
overrides the computed delay for that attempt.
"""
import time
import logging
from functools import wraps
from typing import Callable, Optional, Type, Tuple

from .errors import OracleRateLimitedError, TransientError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (TransientError, OracleRateLimitedError)


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    max_delay: float = 30.0,
    exceptions: Tuple[Type[Exception], ...] = RETRYABLE_ERRORS,
    sleep: Optional[Callable[[float], None]] = None,
):
    """
    Decorator that retries a function with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds before first retry
        backoff_multiplier: Multiplier for delay after each retry
        max_delay: Maximum delay between retries in seconds
        exceptions: Exception types that trigger a retry
        sleep: Sleep function, defaults to time.sleep

    Returns:
        Decorated function that retries on failure

    Example:
        @retry_with_backoff(max_retries=2)
        def complete(prompt):
            return client.chat.completions.create(...)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} failed after {max_retries} retries: {e}")
                        raise

                    wait = getattr(e, 'retry_after', None) or delay
                    wait = min(wait, max_delay)
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {wait:.1f}s: {e}"
                    )
                    (sleep or time.sleep)(wait)
                    delay = min(delay * backoff_multiplier, max_delay)

        return wrapper
    return decorator
