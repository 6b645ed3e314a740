"""Tests for datespine.core.retry."""

import pytest

from datespine.core.errors import EntitlementSourceError
from datespine.core.retry import ExponentialBackoff, NoRetry, RetryContext


class TestExponentialBackoff:
    def test_delays_grow_and_cap(self):
        strategy = ExponentialBackoff(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [strategy.next_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=1.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 0.75 <= strategy.next_delay(0) <= 1.25

    def test_should_retry_respects_max(self):
        strategy = ExponentialBackoff(max_retries=2)
        assert strategy.should_retry(1)
        assert strategy.should_retry(2)
        assert not strategy.should_retry(3)

    def test_only_retryable_errors(self):
        strategy = ExponentialBackoff(max_retries=5)
        assert strategy.should_retry(1, EntitlementSourceError("503"))
        assert not strategy.should_retry(1, EntitlementSourceError("bad body", retryable=False))
        assert not strategy.should_retry(1, ValueError("boom"))


class TestRetryContext:
    def test_succeeds_after_transient_failures(self):
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise EntitlementSourceError("try again")
            return "ok"

        ctx = RetryContext(ExponentialBackoff(max_retries=3, base_delay=0.01, jitter=False), sleep=sleeps.append)
        assert ctx.run(flaky) == "ok"
        assert ctx.attempts == 3
        assert sleeps == [0.01, 0.02]

    def test_raises_last_error_when_exhausted(self):
        def always_fails():
            raise EntitlementSourceError("down")

        ctx = RetryContext(ExponentialBackoff(max_retries=2, base_delay=0, jitter=False), sleep=lambda _: None)
        with pytest.raises(EntitlementSourceError):
            ctx.run(always_fails)
        assert ctx.attempts == 3
        assert len(ctx.errors) == 3

    def test_non_retryable_fails_fast(self):
        retried = []
        ctx = RetryContext(
            ExponentialBackoff(max_retries=5, base_delay=0),
            on_retry=lambda *a: retried.append(a),
            sleep=lambda _: None,
        )
        with pytest.raises(ValueError):
            ctx.run(lambda: (_ for _ in ()).throw(ValueError("nope")))
        assert ctx.attempts == 1
        assert retried == []

    def test_no_retry(self):
        ctx = RetryContext(NoRetry())
        with pytest.raises(EntitlementSourceError):
            ctx.run(lambda: (_ for _ in ()).throw(EntitlementSourceError("down")))
        assert ctx.attempts == 1
