"""Timeout enforcement for calls to external collaborators.

Manifesto:
    Operations without timeouts are a reliability anti-pattern. A hung
    entitlement lookup must not hold a request worker hostage; after the
    deadline the caller falls back to a stale cache entry or fails fast.

Architecture:
    ::

        run_with_timeout(func, 2.0)
              │
              ▼
        ┌────────────────────────────────────────────────┐
        │  ThreadPoolExecutor(max_workers=1)             │
        │  - operation runs in a worker thread           │
        │  - caller waits on future.result(timeout)      │
        │  - on timeout: TimeoutExpired, executor is     │
        │    shut down without waiting for the thread    │
        └────────────────────────────────────────────────┘

Tags:
    timeout, deadline, reliability, datespine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import concurrent.futures
import time
from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")


class TimeoutExpired(TimeoutError):
    """Raised when an operation exceeds its deadline.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the caller waited
        operation: Name/description of the operation
    """

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "operation",
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation

        msg = f"Operation '{operation}' timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (waited {elapsed:.2f}s)"

        super().__init__(msg)


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float,
    operation: str | None = None,
    args: tuple[Any, ...] | None = None,
    kwargs: dict[str, Any] | None = None,
) -> T:
    """Run a callable with a timeout using a worker thread.

    Args:
        func: Callable to execute
        timeout_seconds: Maximum execution time
        operation: Name for error messages
        args: Positional arguments for func
        kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Raises:
        TimeoutExpired: If execution exceeds timeout
        Exception: Any exception raised by func
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    start = time.monotonic()
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="datespine-timeout")
    try:
        future = executor.submit(func, *(args or ()), **(kwargs or {}))
        try:
            return future.result(timeout=timeout_seconds)
        except concurrent.futures.TimeoutError:
            # The worker thread keeps running; it cannot be killed
            raise TimeoutExpired(
                timeout=timeout_seconds,
                elapsed=time.monotonic() - start,
                operation=operation or getattr(func, "__name__", "unknown"),
            ) from None
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
