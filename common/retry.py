"""
Retry with exponential backoff for transient ledger storage failures
"""
import asyncio
import random
from typing import Callable, Any, Optional, List
import logging

from common.error_handling import StorageError

logger = logging.getLogger(__name__)

class RetryConfig:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or [StorageError])

    def is_retryable(self, error: Exception) -> bool:
        return isinstance(error, self.retryable_exceptions)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following `attempt` (1-based)."""
        delay = min(self.base_delay * self.exponential_base ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay

async def retry_async(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call func until it succeeds, raises a non-retryable error, or attempts run out"""
    name = getattr(func, "__qualname__", repr(func))
    attempt = 1
    while True:
        try:
            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            return func(*args, **kwargs)
        except Exception as e:
            if not config.is_retryable(e):
                raise
            if attempt >= config.max_attempts:
                logger.error(f"Giving up on {name} after {attempt} attempts: {e}")
                raise
            delay = config.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt}/{config.max_attempts} of {name} failed: {e}. Retrying in {delay:.2f}s",
                extra={"attempt": attempt},
            )
            await asyncio.sleep(delay)
            attempt += 1

# Business errors (insufficient credits, missing account) are never retried
STORAGE_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=10.0,
    retryable_exceptions=[StorageError]
)
