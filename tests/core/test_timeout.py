"""Tests for datespine.core.timeout."""

import threading
import time

import pytest

from datespine.core.timeout import TimeoutExpired, run_with_timeout


class TestRunWithTimeout:
    def test_returns_result(self):
        assert run_with_timeout(lambda x, y: x + y, 1.0, args=(2, 3)) == 5

    def test_propagates_exception(self):
        def boom():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            run_with_timeout(boom, 1.0)

    def test_raises_timeout_without_waiting_for_worker(self):
        release = threading.Event()

        def slow():
            release.wait(5)

        start = time.monotonic()
        with pytest.raises(TimeoutExpired) as exc_info:
            run_with_timeout(slow, 0.05, operation="slow_lookup")
        elapsed = time.monotonic() - start
        release.set()

        assert elapsed < 1.0
        assert exc_info.value.operation == "slow_lookup"
        assert exc_info.value.timeout == 0.05
        assert isinstance(exc_info.value, TimeoutError)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            run_with_timeout(lambda: None, 0)
