"""Retry strategy with exponential backoff for provider operations."""

import time
import random
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from stackforge.utils.errors import ErrorHandler, error_handler as default_error_handler
from stackforge.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


@dataclass
class RetryResult(Generic[T]):
    """Value returned by a retried call plus the number of attempts it took."""

    value: T
    attempts: int

    @property
    def retries(self) -> int:
        return self.attempts - 1


class RetryError(Exception):
    """Raised when every attempt failed; wraps the last error."""

    def __init__(self, last_error: Exception, attempts: int):
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts


class RetryStrategy:
    """Implements bounded exponential backoff for transient errors."""

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        error_handler: Optional[ErrorHandler] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts after the first call
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Function used to wait between attempts
            error_handler: Classifier deciding which errors are transient
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep
        self.error_handler = error_handler or default_error_handler

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is transient and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False
        return self.error_handler.is_transient(error)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Up to 10% random jitter
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute(self, func: Callable[..., T], *args, **kwargs) -> RetryResult[T]:
        """Execute a function with retry logic.

        Returns:
            RetryResult with the function's return value and attempt count

        Raises:
            RetryError: wrapping the last exception once the error is permanent
                or all retries are exhausted
        """
        attempt = 0
        while True:
            try:
                value = func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if self.error_handler.is_transient(e):
                        logger.error(f"All {self.max_retries} retry attempts exhausted: {e}")
                    else:
                        logger.debug(f"Error is not retryable: {e}")
                    raise RetryError(e, attempt + 1) from e

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                self.sleep(delay)
                attempt += 1
                continue

            if attempt > 0:
                logger.info(f"Operation succeeded after {attempt} retries")
            return RetryResult(value=value, attempts=attempt + 1)

