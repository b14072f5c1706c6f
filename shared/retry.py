"""
Backoff for connecting to the rule and counter stores.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from shared.logging import get_logger


T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff schedule with optional 10% jitter."""
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    factor: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)
        if self.jitter:
            spread = delay * 0.1
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)


class RetryError(Exception):
    """Raised when every attempt failed."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    retry_on: Tuple[Type[BaseException], ...],
    backoff: Optional[Backoff] = None,
    name: Optional[str] = None
) -> T:
    """Await `operation()` until it succeeds or the backoff schedule runs out."""
    backoff = backoff or Backoff()
    name = name or getattr(operation, "__name__", "operation")
    logger = get_logger("policy.retry")

    for attempt in range(1, backoff.attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= backoff.attempts:
                logger.error("All retry attempts exhausted", operation=name, attempts=attempt, error=str(e))
                raise RetryError(f"{name} failed after {attempt} attempts", e, attempt) from e

            delay = backoff.delay(attempt)
            logger.warning("Attempt failed, retrying", operation=name, attempt=attempt,
                           delay=round(delay, 3), error=str(e))
            await asyncio.sleep(delay)

    raise ValueError("backoff.attempts must be at least 1")
