"""
Exponential backoff with optional jitter.

``RetryPolicy`` configures job-level retries in the queue (immediate retry by
default), ``ExponentialBackoff`` computes delays for transport and storage
connection retries.
"""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from utils.logger import get_logger

logger = get_logger(__name__)


class ErrorType(Enum):
    """Types of errors for specific retry strategies."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    HTTP_5XX = "http_5xx"
    HTTP_4XX = "http_4xx"
    UNKNOWN = "unknown"


RETRYABLE_ERROR_TYPES = frozenset(
    {ErrorType.TIMEOUT, ErrorType.RATE_LIMIT, ErrorType.NETWORK, ErrorType.HTTP_5XX}
)


def classify_status(status_code: int) -> Optional[ErrorType]:
    """Map an HTTP status code to an error type, ``None`` for success codes."""
    if status_code == 429:
        return ErrorType.RATE_LIMIT
    if status_code >= 500:
        return ErrorType.HTTP_5XX
    if status_code >= 400:
        return ErrorType.HTTP_4XX
    return None


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy for queued jobs.

    ``max_retries`` is the total number of attempts a job gets. With
    ``base_delay == 0`` retries happen immediately.
    """

    max_retries: int = 3
    base_delay: float = 0.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = False

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        if self.base_delay <= 0:
            return 0.0
        delay = min(
            self.base_delay * (self.multiplier ** max(0, retry_number - 1)),
            self.max_delay,
        )
        if self.jitter:
            delay *= 1 + (0.1 + random.random() * 0.4)
        return delay


class ExponentialBackoff:
    """Exponential backoff calculator with per-error-type retry limits."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.config = config
        self.enabled = config.get("enabled", True)
        self.base_delay = config.get("base_delay_seconds", 1.0)
        self.max_delay = config.get("max_delay_seconds", 30.0)
        self.multiplier = config.get("multiplier", 2.0)
        self.jitter = config.get("jitter", True)
        self.max_attempts = config.get("max_attempts", 3)

    def calculate_delay(self, attempt: int, error_type: Optional[ErrorType] = None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (0-based)
            error_type: Type of error; rate limiting waits longer

        Returns:
            Delay in seconds
        """
        if not self.enabled:
            return 0.0

        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)

        if error_type is ErrorType.RATE_LIMIT:
            delay = min(delay * 2, self.max_delay)

        # Add jitter to prevent thundering herd
        if self.jitter and delay > 0:
            delay *= 1 + (0.1 + random.random() * 0.4)

        logger.debug(f"Calculated delay for attempt {attempt}: {delay:.2f}s")
        return delay

    def should_retry(self, attempt: int, error_type: ErrorType) -> bool:
        """
        Retry decision based on error type.

        Args:
            attempt: Number of retries already performed
            error_type: Type of the last error
        """
        if not self.enabled or attempt >= self.max_attempts:
            return False
        return error_type in RETRYABLE_ERROR_TYPES

    async def wait_with_backoff(
        self, attempt: int, error_type: Optional[ErrorType] = None
    ) -> float:
        """Calculate delay and wait asynchronously. Returns the delay waited."""
        delay = self.calculate_delay(attempt, error_type)
        if delay > 0:
            logger.debug(f"Waiting {delay:.2f}s before retry")
            await asyncio.sleep(delay)
        return delay
