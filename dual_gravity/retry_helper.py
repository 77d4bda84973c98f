"""
Retry Helper - exponential backoff for catalog API calls

Provides a decorator that retries failed requests with increasing delays.
"""
import time
import logging
from functools import wraps
from typing import Callable, Type, Tuple

from .errors import RetryableError, RateLimitError

logger = logging.getLogger(__name__)


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 0.25,
    backoff_multiplier: float = 2.0,
    max_delay: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator that retries a function with exponential backoff.

    A RateLimitError carrying a retry_after hint waits for that long instead,
    capped at max_delay so a request stays inside its deadline.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds before first retry
        backoff_multiplier: Multiplier for delay after each retry
        max_delay: Maximum delay between retries in seconds
        exceptions: Tuple of exception types to catch and retry
        sleep: Sleep function (swapped out in tests)

    Returns:
        Decorated function that retries on failure

    Example:
        @retry_with_backoff(max_retries=2)
        def fetch_related(artist_id):
            return client.artist_related_artists(artist_id)
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
                        logger.warning(
                            f"{func.__name__} failed after {max_retries} retries: {e}"
                        )
                        raise

                    wait = delay
                    if isinstance(e, RateLimitError) and e.retry_after:
                        wait = e.retry_after
                    wait = min(wait, max_delay)

                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {wait:.2f}s: {e}"
                    )
                    sleep(wait)
                    delay = min(delay * backoff_multiplier, max_delay)

        return wrapper
    return decorator
