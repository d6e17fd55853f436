"""Retry utilities with exponential backoff."""

import asyncio
import logging
import random
from typing import Callable, Optional, Type, Union
from functools import wraps
from dataclasses import dataclass

from service_lifecycle.exceptions import LifecycleError, ErrorCode

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0  # Base delay in seconds
    max_delay: float = 60.0  # Maximum delay in seconds
    exponential_base: float = 2.0  # Exponential backoff multiplier
    jitter: bool = True  # Add random jitter to delays
    backoff_strategy: str = "exponential"  # exponential, linear, fixed


class RetryManager:
    """Manages retry logic with exponential backoff."""

    NON_RETRYABLE_CODES = frozenset({
        ErrorCode.VALIDATION_ERROR,
        ErrorCode.OPERATION_IN_PROGRESS,
        ErrorCode.INSTANCE_NOT_FOUND,
        ErrorCode.BROKER_REQUEST_REJECTED,
        ErrorCode.BROKER_RESPONSE_MALFORMED,
    })

    def __init__(self, config: RetryConfig):
        """Initialize retry manager.

        Args:
            config: Retry configuration
        """
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt number."""
        if self.config.backoff_strategy == "exponential":
            delay = self.config.base_delay * (self.config.exponential_base ** (attempt - 1))
        elif self.config.backoff_strategy == "linear":
            delay = self.config.base_delay * attempt
        else:  # fixed
            delay = self.config.base_delay

        # Apply maximum delay limit
        delay = min(delay, self.config.max_delay)

        # Add jitter if enabled
        if self.config.jitter:
            jitter_range = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)

    def should_retry(self, attempt: int, exception: Exception) -> bool:
        """Determine if operation should be retried."""
        if attempt >= self.config.max_attempts:
            return False

        # Don't retry certain types of errors
        if isinstance(exception, LifecycleError):
            if exception.error_code in self.NON_RETRYABLE_CODES:
                return False

        return True


def retry_with_backoff(
    config: Optional[RetryConfig] = None,
    exceptions: Union[Type[Exception], tuple] = Exception
):
    """Decorator for retrying coroutine functions with exponential backoff.

    Args:
        config: Retry configuration (uses defaults if None)
        exceptions: Exception types to retry on
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            retry_manager = RetryManager(config)
            last_exception = None

            for attempt in range(1, config.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)

                except exceptions as e:
                    last_exception = e

                    if not retry_manager.should_retry(attempt, e):
                        logger.warning(f"Not retrying {func.__name__} after attempt {attempt}: {e}")
                        break

                    delay = retry_manager.calculate_delay(attempt)
                    logger.warning(
                        f"Attempt {attempt} of {func.__name__} failed: {e}. "
                        f"Retrying in {delay:.2f} seconds..."
                    )
                    await asyncio.sleep(delay)

            # If we get here, all retries failed
            raise last_exception

        return wrapper

    return decorator
