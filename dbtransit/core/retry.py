"""
Bounded retry with backoff for transient driver failures.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from dbtransit.core.errors import FatalIOError, TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings"""
    max_retries: int = 3
    retry_delay: float = 0.5
    backoff: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return self.retry_delay * (self.backoff ** (attempt - 1))


async def retry_transient(operation: Callable[[], Awaitable[T]], policy: RetryPolicy,
                          description: str, stream: Optional[int] = None) -> T:
    """
    Await `operation()`, retrying on TransientIOError.

    The operation must be safe to repeat: a failed attempt has committed
    nothing. After `policy.max_retries` retries the last error is raised
    as FatalIOError.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TransientIOError as e:
            attempt += 1
            if attempt > policy.max_retries:
                raise FatalIOError(
                    f"{description} failed after {policy.max_retries} retries: {e.message}",
                    locator=e.locator, stream=stream if stream is not None else e.stream,
                ) from e
            delay = policy.delay_for(attempt)
            logger.warning(f"{description} failed, retrying ({attempt}/{policy.max_retries}) in {delay:.2f}s: {e.message}")
            await asyncio.sleep(delay)
