"""Retry strategies with exponential backoff and jitter.

Used by the API layer to wrap calls to the entitlement source so a
single dropped connection does not force a stale serve.

Example:
    >>> from datespine.core.retry import ExponentialBackoff, RetryContext
    >>>
    >>> strategy = ExponentialBackoff(max_retries=2, base_delay=0.1, max_delay=1.0)
    >>> ctx = RetryContext(strategy)
    >>> ctx.run(lambda: 42)
    42
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from datespine.core.errors import is_retryable

T = TypeVar("T")


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before next retry attempt.

        Args:
            attempt: Zero-based attempt number (0 = first retry)

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another retry should be attempted.

        Args:
            attempt: Number of attempts made so far
            error: The exception that caused the failure
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter

    Attributes:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
        only_retryable: Retry only errors whose ``retryable`` flag is set
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    only_retryable: bool = True

    def next_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Check if retry should be attempted."""
        if attempt > self.max_retries:
            return False

        if error is not None and self.only_retryable:
            return is_retryable(error)

        return True


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Context tracking retry state.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3))
        >>> result = ctx.run(lambda: call_api())
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since first attempt."""
        return (utcnow() - self.started_at).total_seconds()

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute function with retry logic.

        Raises:
            Last exception if all retries exhausted or the error is not retryable
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self.sleep(delay)
