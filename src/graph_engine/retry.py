"""Retry with exponential backoff for cluster calls."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from common import ApiError, is_transient_status
from config import RetryPolicy

logger = logging.getLogger(__name__)

# Raised by ClusterApi implementations that do not wrap transport failures
NETWORK_ERRORS = (ConnectionError, TimeoutError, asyncio.TimeoutError)


def is_retryable(error: Exception) -> bool:
    """Network failures, 408, 429 and 5xx are retryable; other 4xx are not."""
    if isinstance(error, ApiError):
        return is_transient_status(error.status_code)
    return isinstance(error, NETWORK_ERRORS)


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    label: str = 'operation',
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    **kwargs: Any,
) -> Any:
    """Execute an async function, retrying transient failures.

    Waits policy.delay_for(n) before retry n (0-based); gives up after
    policy.max_retries retries and re-raises the last error. Errors that
    are not retryable propagate immediately.
    """
    policy = policy or RetryPolicy()
    attempt = 0

    while True:
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e) or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt)
            attempt += 1
            logger.warning("%s failed (attempt %d/%d), retrying in %.1fs: %s",
                           label, attempt, policy.max_retries + 1, delay, e)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
