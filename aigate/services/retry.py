"""
RetryExecutor - Exponential backoff with jitter for async operations.

Delay before attempt k+1 (k >= 1):

    min(base_delay * backoff_multiplier ** (k - 1) * (1 + U(0, jitter)), max_delay)

Jitter only stretches the delay upwards, so it always lies between the plain
exponential delay (capped at max_delay) and max_delay.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, TypeVar

from loguru import logger

from aigate.services.error_classifier import is_retryable_error

T = TypeVar("T")


class SleepFunc(Protocol):
    """Protocol for injectable async sleep."""

    async def __call__(self, seconds: float) -> None: ...


@dataclass(frozen=True)
class RetryOptions:
    """Retry policy for one call site."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    backoff_multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the exponential delay added at random
    retryable: Callable[[BaseException], bool] = is_retryable_error

    def compute_delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.base_delay * self.backoff_multiplier ** (attempt - 1)
        if self.jitter > 0:
            delay *= 1 + random.uniform(0, self.jitter)
        return min(delay, self.max_delay)


class RetryExecutor:
    """
    Runs async operations under a fixed RetryOptions policy.

    Usage:
        executor = RetryExecutor(RetryOptions(max_attempts=5))
        result = await executor.execute(lambda: client.invoke_model(...))
    """

    def __init__(
        self,
        options: RetryOptions | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.options = options or RetryOptions()
        self._sleep = sleep
        self._stats = RetryStats()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        options: RetryOptions | None = None,
    ) -> T:
        opts = options or self.options
        attempt = 0

        while True:
            attempt += 1
            self._stats.attempts += 1
            try:
                result = await operation()
            except Exception as exc:
                if not opts.retryable(exc):
                    self._stats.failures += 1
                    raise
                if attempt >= opts.max_attempts:
                    self._stats.failures += 1
                    logger.error(
                        f"Giving up after {attempt} attempts: {type(exc).__name__}: {exc}"
                    )
                    raise

                delay = opts.compute_delay(attempt)
                self._stats.retries += 1
                logger.warning(
                    f"Attempt {attempt}/{opts.max_attempts} failed "
                    f"({type(exc).__name__}: {exc}), retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            self._stats.successes += 1
            return result

    def get_stats(self) -> "RetryStats":
        return self._stats


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    sleep: SleepFunc = asyncio.sleep,
) -> T:
    """Run operation with retries using a throwaway executor."""
    return await RetryExecutor(options, sleep=sleep).execute(operation)


class RetryStats:
    """Statistics for retried operations."""

    def __init__(self):
        self.attempts: int = 0  # Every invocation, first tries included
        self.retries: int = 0
        self.successes: int = 0
        self.failures: int = 0  # Operations that surfaced an error

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "attempts": self.attempts,
            "retries": self.retries,
            "successes": self.successes,
            "failures": self.failures,
        }
