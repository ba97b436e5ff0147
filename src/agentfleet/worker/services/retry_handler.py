"""Retry with configurable backoff.

Used for outbound calls into agent containers, which refuse connections for a
few seconds while a gateway is booting or reloading, and for re-establishing
the change-feed connection after the database goes away.
"""

import asyncio
import random
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()


class BackoffStrategy(str, Enum):
    """Backoff strategy for retries."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class RetryHandler:
    """Retries an async callable up to a fixed number of attempts."""

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        strategy: BackoffStrategy = BackoffStrategy.FIXED,
        jitter: bool = False,
    ):
        """Initialize retry handler.

        Args:
            max_attempts: Total attempts, including the first one
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            strategy: Backoff strategy to use
            jitter: Whether to add up to 25% random variation to delays
        """
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.strategy = strategy
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry following ``attempt`` (1-indexed)."""
        if self.strategy == BackoffStrategy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)
        if self.jitter:
            delay = max(0.0, delay + random.uniform(-0.25 * delay, 0.25 * delay))
        return delay

    async def retry(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
        on_retry: Callable[[BaseException, int, float], None] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Execute ``func`` until it succeeds or the attempt budget is spent.

        Raises:
            The last retryable exception once all attempts failed; any
            non-retryable exception immediately
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await func(*args, **kwargs)
                if attempt > 1:
                    logger.info("retry_succeeded", attempt=attempt)
                return result
            except retryable_exceptions as e:
                if attempt >= self.max_attempts:
                    logger.error(
                        "retry_exhausted",
                        attempts=attempt,
                        error=str(e) or type(e).__name__,
                    )
                    raise

                delay = self.calculate_delay(attempt)
                logger.warning(
                    "retry_attempt",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e) or type(e).__name__,
                    strategy=self.strategy.value,
                )
                if on_retry:
                    on_retry(e, attempt, delay)
                await asyncio.sleep(delay)

        raise RuntimeError("unreachable")
