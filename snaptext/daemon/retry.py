"""Retry policy with exponential backoff for transient OCR failures."""

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from .errors import OcrError, ProviderError, Timeout

T = TypeVar("T")


def is_retryable(error: OcrError) -> bool:
    """Only timeouts, rate limits and server-side failures are worth repeating."""
    if isinstance(error, Timeout):
        return True
    if isinstance(error, ProviderError):
        return error.retryable
    return False


class RetryPolicy:
    """Retry policy with exponential backoff."""

    def __init__(self,
                 max_retries: int = 0,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        """
        Initialize retry policy.

        Args:
            max_retries: Maximum retry attempts (0 disables retrying)
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Whether to add jitter
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func``, repeating on retryable ``OcrError``s."""
        attempt = 0
        while True:
            try:
                return await func()
            except OcrError as e:
                if attempt >= self.max_retries or not is_retryable(e):
                    raise
                delay = self.calculate_delay(attempt)
                attempt += 1
                logger.debug(f"Retry {attempt}/{self.max_retries} after {delay:.2f}s: {e}")
                await asyncio.sleep(delay)
