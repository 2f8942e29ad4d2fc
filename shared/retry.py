"""
Retry mechanism for resilient operations.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior: a fixed number of attempts, a fixed delay apart."""

    def __init__(self, max_attempts: int = 4, delay: float = 1.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.delay = max(0.0, delay)

    @classmethod
    def fixed(cls, retries: int, delay: float) -> "RetryConfig":
        """``retries`` extra attempts after the first one, ``delay`` seconds apart."""
        return cls(max_attempts=retries + 1, delay=delay)


async def retry_call(func: Callable[[], Awaitable[Any]],
                     config: Optional[RetryConfig] = None,
                     *,
                     exceptions: tuple = (Exception,),
                     sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                     name: str = "operation",
                     on_retry: Optional[Callable[[int, BaseException], None]] = None) -> Any:
    """Await ``func()`` until it succeeds or attempts run out.

    The last exception is re-raised unchanged once every attempt has failed.
    Cancellation is never retried.
    """
    if config is None:
        config = RetryConfig()

    logger = get_logger(f"retry.{name}")

    attempt = 1
    while True:
        try:
            result = await func()
        except exceptions as e:
            if attempt >= config.max_attempts:
                if config.max_attempts > 1:
                    logger.error(
                        "All retry attempts exhausted",
                        attempt=attempt,
                        max_attempts=config.max_attempts,
                        operation=name,
                        error=str(e)
                    )
                raise

            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=config.delay,
                operation=name,
                error=str(e)
            )

            if on_retry is not None:
                on_retry(attempt, e)

            await sleep(config.delay)
            attempt += 1
            continue

        if attempt > 1:
            logger.info("Retry succeeded", attempt=attempt, operation=name)
        return result
