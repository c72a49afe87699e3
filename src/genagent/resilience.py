"""Resilience helpers for provider and integration calls.

Provides:
    - Retry with exponential backoff (recoverable errors only)
    - Timeouts for single awaitables and for each step of an async stream

Example:
    response = await retry_async(
        provider.send,
        payload,
        max_attempts=3,
        retryable_exceptions=(RateLimitedError, ProviderUnavailableError),
    )

    async for chunk in aiter_with_timeout(provider.stream(payload), 30.0):
        ...
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from .exceptions import (
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth retrying for idempotent provider calls
DEFAULT_RETRYABLE_EXCEPTIONS = (
    RateLimitedError,
    ProviderUnavailableError,
    ProviderTimeoutError,
)


def compute_backoff(
    attempt: int,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    delay = min(initial_delay * (backoff_factor ** (attempt - 1)), max_delay)
    if jitter:
        delay = delay * (0.5 + random.random())
    return min(delay, max_delay)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    retryable_exceptions: tuple = DEFAULT_RETRYABLE_EXCEPTIONS,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    **kwargs,
) -> T:
    """Retry an async function call with exponential backoff.

    Only exceptions listed in ``retryable_exceptions`` are retried; anything
    else propagates immediately. A RateLimitedError carrying ``retry_after``
    overrides the computed delay.

    Args:
        func: Async function to call
        *args: Arguments to pass to func
        max_attempts: Maximum attempts (including the first)
        backoff_factor: Delay multiplier
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        jitter: Randomize delays to avoid synchronized retries
        retryable_exceptions: Exceptions to retry on
        on_retry: Optional callback called before each retry with (exception, attempt)
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from func
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except retryable_exceptions as e:
            if attempt >= max_attempts:
                logger.error(f"All {max_attempts} attempts failed. Last error: {e}")
                raise

            delay = compute_backoff(attempt, initial_delay, backoff_factor, max_delay, jitter)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = min(float(retry_after), max_delay)

            if on_retry:
                on_retry(e, attempt)

            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Retry logic error")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: Optional[float],
    error_factory: Optional[Callable[[], Exception]] = None,
) -> T:
    """Await with a timeout, translating asyncio.TimeoutError.

    Args:
        awaitable: Coroutine or future to await
        timeout_seconds: Maximum time in seconds (None = no limit)
        error_factory: Builds the exception raised on timeout

    Raises:
        The exception from error_factory, or asyncio.TimeoutError
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        if error_factory is not None:
            raise error_factory() from None
        raise


async def aiter_with_timeout(
    iterator: AsyncIterator[T],
    timeout_seconds: Optional[float],
    error_factory: Optional[Callable[[], Exception]] = None,
) -> AsyncIterator[T]:
    """Iterate an async stream, bounding the wait for every item.

    The underlying iterator is closed when iteration stops early, times out
    or is cancelled.
    """
    try:
        while True:
            try:
                item = await with_timeout(
                    iterator.__anext__(), timeout_seconds, error_factory
                )
            except StopAsyncIteration:
                return
            yield item
    finally:
        aclose: Any = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError:
                # Generator already running its own cleanup
                pass
