"""
Timeout utilities for bounding store and network operations.
"""

import asyncio
import builtins
from collections.abc import Awaitable, Callable
from typing import Any

from src.utils.logging import get_logger

logger = get_logger(__name__)


class OperationTimeoutError(Exception):
    """Timeout exception carrying the operation that timed out."""

    def __init__(self, operation: str, timeout: float, details: str = ""):
        self.operation = operation
        self.timeout = timeout
        self.details = details
        super().__init__(
            f"{operation} timed out after {timeout}s{f': {details}' if details else ''}"
        )


async def with_timeout[T](
    coro_or_func: Callable[..., Awaitable[T]] | Awaitable[T],
    timeout: float,
    operation_name: str,
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Execute an async operation with timeout.

    Args:
        coro_or_func: Coroutine or async function to execute
        timeout: Timeout in seconds
        operation_name: Description of the operation for error messages
        *args, **kwargs: Arguments to pass to the function

    Returns:
        Result of the operation

    Raises:
        OperationTimeoutError: If operation times out
    """
    try:
        # If it's a function, call it; if it's already a coroutine, use it directly
        coro = coro_or_func(*args, **kwargs) if callable(coro_or_func) else coro_or_func

        return await asyncio.wait_for(coro, timeout=timeout)

    except builtins.TimeoutError:
        logger.error("Operation timed out", operation=operation_name, timeout_seconds=timeout)

        raise OperationTimeoutError(operation_name, timeout)
    except Exception as e:
        logger.error("Operation failed", operation=operation_name, error=str(e))
        raise
