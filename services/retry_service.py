"""
Retry Service with Exponential Backoff
Used for secondary side effects (rewards, receipt uploads, indexer reads).
The oracle and chain submission are deliberately single-attempt per pass.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional
from functools import wraps

logger = logging.getLogger(__name__)


def _is_retryable(exc: Exception) -> bool:
    # Adapters mark permanent failures (4xx, validation) with retryable=False
    return getattr(exc, "retryable", True)


class RetryService:
    """Service for handling retries with exponential backoff and jitter"""

    @staticmethod
    async def retry_async(
        func: Callable[[], Awaitable[Any]],
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        exceptions: tuple = (Exception,),
        operation: Optional[str] = None,
    ) -> Any:
        """
        Retry an async callable.

        Non-retryable errors (exc.retryable is False) are raised on the first
        attempt. The last error is re-raised once attempts are exhausted.
        """
        name = operation or getattr(func, "__name__", "operation")
        delay = initial_delay

        for attempt in range(1, max_attempts + 1):
            try:
                return await func()
            except exceptions as e:
                if not _is_retryable(e):
                    logger.warning(f"🚫 RETRY_ABORTED: {name} failed with non-retryable error: {e}")
                    raise
                if attempt >= max_attempts:
                    logger.error(f"❌ RETRY_EXHAUSTED: {name} failed after {max_attempts} attempts: {e}")
                    raise

                actual_delay = delay * (0.5 + random.random()) if jitter else delay
                logger.warning(
                    f"🔄 RETRY: {name} attempt {attempt}/{max_attempts} failed: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )
                await asyncio.sleep(actual_delay)
                delay = min(delay * exponential_base, max_delay)

        raise RuntimeError(f"{name}: retry loop exited without result")


def retry_async_decorator(strategy: Optional[str] = None, **overrides):
    """
    Decorator for retrying async functions with exponential backoff

    Usage:
        @retry_async_decorator("rewards")
        async def report_event(...):
            ...
    """
    options = dict(RETRY_STRATEGIES.get(strategy, RETRY_STRATEGIES["api_call"]))
    options.update(overrides)

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await RetryService.retry_async(
                lambda: func(*args, **kwargs),
                operation=func.__qualname__,
                **options,
            )

        return wrapper

    return decorator


RETRY_STRATEGIES = {
    'rewards': {
        'max_attempts': 3,
        'initial_delay': 1.0,
        'max_delay': 10.0,
        'exponential_base': 2.0,
    },
    'receipts': {
        'max_attempts': 3,
        'initial_delay': 2.0,
        'max_delay': 20.0,
        'exponential_base': 2.0,
    },
    'indexer': {
        'max_attempts': 4,
        'initial_delay': 1.0,
        'max_delay': 15.0,
        'exponential_base': 2.0,
    },
    'api_call': {
        'max_attempts': 3,
        'initial_delay': 1.0,
        'max_delay': 20.0,
        'exponential_base': 2.0,
    },
}
