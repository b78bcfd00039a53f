"""
Retry mechanism for resilient operations.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = False,
                 backoff_strategy: str = "linear"):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate the wait after failed attempt number ``attempt`` (1-based)."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    elif config.backoff_strategy == "fixed":
        delay = config.base_delay
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


async def retry_async(func: Callable[[], Awaitable[Any]],
                      exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                      config: Optional[RetryConfig] = None,
                      retry_if: Optional[Callable[[BaseException], bool]] = None,
                      sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                      on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
                      name: Optional[str] = None) -> Any:
    """Call ``func`` until it succeeds or the policy gives up.

    Only exceptions in ``exceptions`` for which ``retry_if`` returns true are
    retried. The last exception is re-raised unchanged once attempts run out.
    """
    if config is None:
        config = RetryConfig()
    operation = name or getattr(func, "__name__", "operation")
    logger = get_logger(f"retry.{operation}")

    attempt = 0
    while True:
        attempt += 1
        try:
            result = await func()
        except exceptions as e:
            if retry_if is not None and not retry_if(e):
                raise

            if attempt >= config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    function=operation,
                    error=str(e)
                )
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=delay,
                function=operation,
                error=str(e)
            )
            if on_retry is not None:
                on_retry(attempt, delay, e)
            await sleep(delay)
            continue

        if attempt > 1:
            logger.info("Retry succeeded", attempt=attempt, function=operation)
        return result
