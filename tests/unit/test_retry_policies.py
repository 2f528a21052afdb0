"""Retry policy and backoff tests."""

import pytest

from agentcoord.errors import ErrorCategory
from agentcoord.utils.retry import (
    BUILTIN_POLICIES,
    RetryPolicy,
    calculate_delay,
    compute_backoff,
)


def test_builtin_policies():
    default = BUILTIN_POLICIES["default"]
    assert (default.max_retries, default.base_delay, default.max_delay) == (3, 1.0, 30.0)
    ai = BUILTIN_POLICIES["ai-service"]
    assert (ai.max_retries, ai.base_delay, ai.max_delay) == (5, 2.0, 60.0)
    quick = BUILTIN_POLICIES["quick"]
    assert (quick.max_retries, quick.base_delay, quick.max_delay) == (2, 0.5, 5.0)
    assert not quick.should_retry("rate-limit")


def test_should_retry_respects_lists():
    policy = RetryPolicy()
    assert policy.should_retry(ErrorCategory.TIMEOUT)
    assert policy.should_retry("database")
    assert not policy.should_retry("validation")
    assert not policy.should_retry("internal")


def test_non_retryable_wins_over_retryable():
    policy = RetryPolicy(
        retryable_categories=["timeout"], non_retryable_categories=["timeout"]
    )
    assert not policy.should_retry("timeout")


def test_policy_accepts_camel_case_keys():
    policy = RetryPolicy.model_validate({"maxRetries": 7, "baseDelay": 0.1, "maxDelay": 2})
    assert policy.max_retries == 7
    assert policy.base_delay == 0.1


@pytest.mark.parametrize(
    "attempt, expected", [(1, 1.0), (2, 2.0), (3, 4.0), (5, 16.0), (6, 30.0), (10, 30.0)]
)
def test_compute_backoff_is_capped_exponential(attempt, expected):
    assert compute_backoff(attempt, base=1.0, factor=2.0, maximum=30.0) == expected


def test_jitter_stays_within_a_quarter():
    policy = RetryPolicy(base_delay=4.0, jitter=True)
    for _ in range(50):
        assert 3.0 <= calculate_delay(policy, 1) <= 5.0


def test_calculate_delay_without_jitter():
    policy = RetryPolicy(base_delay=0.5, factor=3, max_delay=10, jitter=False)
    assert [calculate_delay(policy, n) for n in (1, 2, 3, 4)] == [0.5, 1.5, 4.5, 10]
