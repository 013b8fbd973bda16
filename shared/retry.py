"""
Retry helper for idempotent upstream calls.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger

logger = get_logger("retry")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, which errors to retry and how long to wait."""

    max_attempts: int = 1
    base_delay: float = 0.1
    max_delay: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff after ``attempt`` failures, with 10% jitter."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        jitter = delay * 0.1
        return max(0.0, delay + random.uniform(-jitter, jitter))


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    policy: RetryPolicy,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    **kwargs: Any,
) -> Any:
    """Await ``func(*args, **kwargs)`` until it succeeds or attempts run out.

    Only exceptions in ``policy.retry_on`` for which ``should_retry`` (when
    given) returns true are retried. The last exception is re-raised as is.
    """
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except policy.retry_on as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            if attempt >= policy.max_attempts:
                if policy.max_attempts > 1:
                    logger.error(
                        "All retry attempts exhausted",
                        function=getattr(func, "__name__", repr(func)),
                        attempts=attempt,
                        error=str(exc),
                    )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                function=getattr(func, "__name__", repr(func)),
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
            attempt += 1
