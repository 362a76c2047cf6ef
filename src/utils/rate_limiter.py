import asyncio
import functools
import inspect

from src.utils.logging import get_logger

logger = get_logger(__name__)


class RateLimitedError(Exception):
    """Exception to indicate a call hit a transient failure and may be retried."""

    def __init__(self, retry_after: float | None = None, message: str = "Rate limited"):
        self.retry_after = retry_after
        super().__init__(message)


def _retry_delay(
    e: RateLimitedError, attempt: int, max_retries: int, base_delay: float, func_name: str
) -> float:
    """Calculate the delay before the next attempt, or re-raise once retries are exhausted."""
    if attempt >= max_retries - 1:
        logger.error("Max retries reached", function=func_name, attempts=max_retries, error=str(e))
        raise e

    # Determine delay: use server-provided retry_after or exponential backoff
    delay = e.retry_after if e.retry_after else base_delay * (2**attempt)
    logger.warning(
        "Transient failure, backing off before retry",
        function=func_name,
        delay_seconds=delay,
        server_provided=bool(e.retry_after),
        retry=f"{attempt + 1}/{max_retries}",
        error=str(e),
    )
    return delay


def rate_limited(max_retries: int = 3, base_delay: float = 1):
    """
    Decorator adding bounded exponential backoff to a coroutine.
    The decorated coroutine should raise RateLimitedError for failures worth retrying;
    any other exception propagates immediately.

    Args:
        max_retries: Maximum number of attempts
        base_delay: Base delay in seconds for exponential backoff

    Usage:
        @rate_limited(max_retries=3, base_delay=1)
        async def refresh():
            try:
                return await client.post(...)
            except httpx.TimeoutException as e:
                raise RateLimitedError(message=str(e)) from e
    """

    def decorator(func):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"rate_limited only supports coroutine functions, got {func!r}")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except RateLimitedError as e:
                    delay = _retry_delay(e, attempt, max_retries, base_delay, func.__name__)
                    await asyncio.sleep(delay)

            raise RuntimeError(f"Unexpected error in retry logic for {func.__name__}")

        return async_wrapper

    return decorator
