"""Retry logic for transient failures."""

import asyncio
import inspect
import random
import logging
from typing import Any, Callable
from dataclasses import dataclass
from enum import Enum

from .exceptions import TransientError


logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """Retry strategy types."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    backoff_multiplier: float = 2.0
    jitter: bool = False
    retryable_exceptions: tuple = (TransientError, ConnectionError, asyncio.TimeoutError)


class RetryHandler:
    """Retries an async callable with a bounded attempt count."""

    def __init__(self, config: RetryConfig):
        """Initialize retry handler.

        Args:
            config: Retry configuration
        """
        self.config = config

    async def execute(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function with retry logic.

        Args:
            func: Function to execute
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            Exception: Last exception if all retries exhausted
        """
        last_exception = None

        for attempt in range(self.config.max_attempts):
            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result

                if attempt > 0:
                    logger.info(f"Retry succeeded on attempt {attempt + 1}")

                return result

            except Exception as e:
                last_exception = e

                if not isinstance(e, self.config.retryable_exceptions):
                    logger.debug(f"Non-retryable exception: {type(e).__name__}")
                    raise

                # Don't retry on last attempt
                if attempt == self.config.max_attempts - 1:
                    break

                delay = self._calculate_delay(attempt)
                logger.debug(
                    f"Attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s"
                )

                await asyncio.sleep(delay)

        logger.warning(
            f"All {self.config.max_attempts} attempts failed. "
            f"Last error: {last_exception}"
        )
        raise last_exception

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt.

        Args:
            attempt: Attempt number (0-based)

        Returns:
            Delay in seconds
        """
        if self.config.strategy == RetryStrategy.FIXED:
            delay = self.config.base_delay
        elif self.config.strategy == RetryStrategy.LINEAR:
            delay = self.config.base_delay * (attempt + 1)
        else:
            delay = self.config.base_delay * (self.config.backoff_multiplier ** attempt)

        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            delay *= 0.5 + random.random()

        return delay
