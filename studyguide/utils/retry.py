"""Retry helpers with exponential backoff."""

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """
    Await ``operation`` until it succeeds or the attempts run out.

    Args:
        operation: Zero-argument coroutine factory to run
        max_attempts: Maximum number of attempts (at least one is made)
        base_delay: Base delay in seconds (doubles each attempt, 0 retries immediately)
        exceptions: Tuple of exception types that trigger a retry

    Returns:
        The operation's result

    Raises:
        The last exception if every attempt failed
    """
    attempts = max(1, max_attempts)
    last_exception: BaseException | None = None

    for attempt in range(attempts):
        try:
            return await operation()
        except exceptions as e:
            last_exception = e
            if attempt < attempts - 1:
                delay = base_delay * (2**attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{attempts} failed: {e}. "
                    f"Retrying in {delay}s..."
                )
                if delay > 0:
                    await asyncio.sleep(delay)
            else:
                logger.error(f"All {attempts} attempts failed: {e}")

    raise last_exception  # type: ignore[misc]


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator for exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of retry attempts
        base_delay: Base delay in seconds (doubles each attempt)
        exceptions: Tuple of exception types to catch

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                base_delay=base_delay,
                exceptions=exceptions,
            )

        return wrapper

    return decorator
