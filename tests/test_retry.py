from __future__ import annotations

import pytest

from topology_reconciler.core.errors import ApplyError, AuthError, CollectionError
from topology_reconciler.core.retry import RetryPolicy, call_with_retry


def flaky(failures: list[Exception], value: str = "ok"):
    calls = []

    def fn():
        calls.append(1)
        if failures:
            raise failures.pop(0)
        return value

    return fn, calls


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(base_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=5.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


def test_policy_needs_at_least_one_attempt():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_retryable_failures_are_retried_until_success():
    fn, calls = flaky([CollectionError("throttled"), ApplyError("busy", retryable=True)])

    value, attempts = call_with_retry(fn, RetryPolicy(max_attempts=3, base_delay_seconds=0.0))

    assert value == "ok"
    assert attempts == 3
    assert len(calls) == 3


def test_non_retryable_failure_propagates_at_once():
    fn, calls = flaky([AuthError("denied")])

    with pytest.raises(AuthError) as info:
        call_with_retry(fn, RetryPolicy(max_attempts=5, base_delay_seconds=0.0))

    assert info.value.attempts == 1
    assert len(calls) == 1


def test_last_retryable_failure_carries_attempt_count():
    fn, _ = flaky([CollectionError("a"), CollectionError("b")])

    with pytest.raises(CollectionError, match="b") as info:
        call_with_retry(fn, RetryPolicy(max_attempts=2, base_delay_seconds=0.0))

    assert info.value.attempts == 2


def test_foreign_exceptions_are_not_retried():
    fn, calls = flaky([KeyError("boom")])

    with pytest.raises(KeyError):
        call_with_retry(fn, RetryPolicy(max_attempts=3, base_delay_seconds=0.0))

    assert len(calls) == 1
