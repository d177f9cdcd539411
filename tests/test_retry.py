import random

import pytest

from infra.retry import RetryPolicy, retry_call


def test_succeeds_after_transient_failures():
    calls = []
    sleeps = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("transient")
        return "ok"

    result = retry_call(flaky, RetryPolicy(max_attempts=3), retry_on=(OSError,), sleep=sleeps.append)
    assert result == "ok"
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_raises_last_error_when_exhausted():
    def always():
        raise OSError("still broken")

    with pytest.raises(OSError, match="still broken"):
        retry_call(always, RetryPolicy(max_attempts=2), retry_on=(OSError,), sleep=lambda _: None)


def test_non_retryable_errors_propagate_immediately():
    calls = []

    def wrong():
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        retry_call(wrong, RetryPolicy(max_attempts=5), retry_on=(OSError,), sleep=lambda _: None)
    assert len(calls) == 1


def test_full_jitter_is_bounded():
    policy = RetryPolicy(base_delay=0.1, max_delay=0.5)
    rng = random.Random(7)
    for attempt in range(8):
        ceiling = min(0.5, 0.1 * 2 ** attempt)
        assert 0.0 <= policy.delay(attempt, rng) <= ceiling


def test_from_config():
    policy = RetryPolicy.from_config({"max_attempts": 0, "base_delay_seconds": 0.2, "max_delay_seconds": 1})
    assert policy.max_attempts == 1
    assert policy.base_delay == 0.2
    assert policy.max_delay == 1.0
    assert RetryPolicy.from_config(None) == RetryPolicy()
