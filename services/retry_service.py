"""
Retry Service with Bounded Backoff
Single place where retry policy for external calls lives
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from config import Config
from utils.exceptions import OracleUnavailableError

logger = logging.getLogger(__name__)

LINEAR = "linear"
EXPONENTIAL = "exponential"


def compute_delay(
    attempt: int,
    initial_delay: float,
    backoff: str = LINEAR,
    exponential_base: float = 2.0,
    max_delay: float = 60.0,
) -> float:
    """Delay before the retry that follows failed attempt number `attempt` (1-based)"""
    if backoff == LINEAR:
        delay = initial_delay * attempt
    elif backoff == EXPONENTIAL:
        delay = initial_delay * (exponential_base ** (attempt - 1))
    else:
        raise ValueError(f"Unknown backoff strategy: {backoff}")
    return min(delay, max_delay)


class RetryService:
    """Service for handling retries with bounded backoff"""

    @staticmethod
    async def retry_async(
        func: Callable[[], Awaitable[Any]],
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        backoff: str = EXPONENTIAL,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
        exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        operation_name: Optional[str] = None,
    ) -> Any:
        """
        Retry an async callable

        Only exceptions listed in `exceptions` are retried; anything else
        propagates on the first occurrence. The last retryable exception is
        re-raised unchanged once attempts are exhausted.

        Args:
            func: Zero-argument async callable
            max_attempts: Total attempts including the first
            initial_delay: Base delay in seconds
            backoff: "linear" (delay * attempt) or "exponential"
            jitter: Scale each delay by a random factor in [0.5, 1.5)
            exceptions: Exception types that trigger a retry
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        name = operation_name or getattr(func, "__name__", "operation")
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func()
            except exceptions as e:
                if attempt >= max_attempts:
                    logger.error(f"Max retry attempts ({max_attempts}) reached for {name}: {e}")
                    raise

                delay = compute_delay(attempt, initial_delay, backoff, exponential_base, max_delay)
                if jitter:
                    delay = delay * (0.5 + random.random())

                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed for {name}: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)


async def call_oracle_with_retry(
    func: Callable[[], Awaitable[Any]],
    operation_name: str,
    max_attempts: Optional[int] = None,
    initial_delay: Optional[float] = None,
) -> Any:
    """
    Oracle retry policy: only OracleUnavailableError is retried, linear backoff.

    Deterministic outcomes (not found, validation, policy failures) are never retried.
    """
    return await RetryService.retry_async(
        func,
        max_attempts=max_attempts if max_attempts is not None else Config.ORACLE_RETRY_ATTEMPTS,
        initial_delay=initial_delay if initial_delay is not None else Config.ORACLE_RETRY_DELAY_SECONDS,
        backoff=LINEAR,
        exceptions=(OracleUnavailableError,),
        operation_name=operation_name,
    )
