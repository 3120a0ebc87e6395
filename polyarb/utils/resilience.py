"""Resilience helpers for latency-bearing external calls.

Implements:
- Timeout wrapping (every connector, oracle and chain call goes through it)
- Semaphore-bounded fan-out that isolates sibling failures
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


async def with_timeout(
    coro: Awaitable[T],
    timeout: float,
    error_message: str = "Operation timed out",
) -> T:
    """Execute coroutine with timeout.

    Args:
        coro: Coroutine to execute
        timeout: Timeout in seconds
        error_message: Error message for timeout

    Returns:
        Coroutine result

    Raises:
        TimeoutError: If operation times out

    Example:
        >>> reserves = await with_timeout(connector.get_reserves(a, b), timeout=5.0)
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        log.warning("timeout", timeout=timeout, message=error_message)
        raise TimeoutError(error_message) from e


class BoundedGather:
    """Run many coroutines concurrently with a ceiling on in-flight calls.

    Exceptions are returned in place of results so one failing item never
    cancels its siblings.

    Example:
        >>> pool = BoundedGather(max_concurrency=4)
        >>> results = await pool.map(simulate, paths)
    """

    def __init__(self, max_concurrency: int = 4) -> None:
        """Initialize pool.

        Args:
            max_concurrency: Maximum number of coroutines running at once
        """
        if max_concurrency < 1:
            msg = "max_concurrency must be >= 1"
            raise ValueError(msg)
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)

    async def _run(self, func: Callable[[T], Awaitable[R]], item: T) -> R:
        async with self._semaphore:
            return await func(item)

    async def map(
        self,
        func: Callable[[T], Awaitable[R]],
        items: Iterable[T],
    ) -> list[R | BaseException]:
        """Apply ``func`` to every item, preserving input order."""
        return await asyncio.gather(
            *(self._run(func, item) for item in items),
            return_exceptions=True,
        )
