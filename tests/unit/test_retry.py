"""Tests for retry and backoff helpers."""

import pytest

from opscrew.cancellation import OperationCancelled
from opscrew.errors import AgentError, ErrorCode, RateLimitExceeded
from opscrew.models import RetryPolicy
from opscrew.utils.retry import compute_backoff, is_retryable, retry_async


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _flaky(failures, exc_factory=lambda: RuntimeError("boom")):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise exc_factory()
        return "ok"

    return operation, calls


def test_backoff_grows_and_is_capped():
    policy = RetryPolicy(backoff_ms=100, backoff_multiplier=3, max_backoff_ms=1000)
    assert [compute_backoff(n, policy) for n in range(1, 5)] == [100, 300, 900, 1000]


def test_is_retryable():
    assert is_retryable(RuntimeError("x"))
    assert not is_retryable(OperationCancelled("stop"))
    assert not is_retryable(RateLimitExceeded("agent", "org"))
    assert is_retryable(AgentError("x", ErrorCode.AGENT_EXECUTION_FAILED, retryable=True))


@pytest.mark.asyncio
async def test_retry_succeeds_after_failures():
    sleep = RecordingSleep()
    operation, calls = _flaky(2)
    policy = RetryPolicy(max_attempts=3, backoff_ms=200, backoff_multiplier=2)

    result, retries = await retry_async(operation, policy, sleep=sleep)

    assert result == "ok"
    assert retries == 2
    assert calls["count"] == 3
    assert sleep.delays == [0.2, 0.4]


@pytest.mark.asyncio
async def test_retry_stops_at_max_attempts():
    sleep = RecordingSleep()
    operation, calls = _flaky(10)
    policy = RetryPolicy(max_attempts=3, backoff_ms=10)

    with pytest.raises(RuntimeError):
        await retry_async(operation, policy, sleep=sleep)
    assert calls["count"] == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_default_policy_makes_one_attempt():
    operation, calls = _flaky(1)
    with pytest.raises(RuntimeError):
        await retry_async(operation, sleep=RecordingSleep())
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately():
    sleep = RecordingSleep()
    operation, calls = _flaky(5, lambda: RateLimitExceeded("agent-a", "org"))
    with pytest.raises(RateLimitExceeded):
        await retry_async(operation, RetryPolicy(max_attempts=4), sleep=sleep)
    assert calls["count"] == 1
    assert sleep.delays == []
