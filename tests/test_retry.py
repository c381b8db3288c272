"""Tests for the retry executor."""
import asyncio

import httpx
import openai
import pytest

from scribeflow.core.errors import NonRetryableError, RetryableTransportError, RetryExhaustedError
from scribeflow.core.retry import RetryExecutor, RetryPolicy, RetryState


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def flaky(failures, error_factory, result="ok"):
    calls = {"count": 0}

    async def operation():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error_factory()
        return result

    return operation, calls


@pytest.mark.parametrize("rng_value", [0.0, 0.5, 0.999])
def test_delay_stays_within_bounds(rng_value):
    policy = RetryPolicy(initial_delay_ms=1000, max_delay_ms=30000, backoff_multiplier=2.0, jitter_factor=0.2)
    executor = RetryExecutor(policy, rng=lambda: rng_value)

    for attempt in range(1, 25):
        delay = executor.compute_delay(attempt)
        assert 0 <= delay <= policy.max_delay_ms * (1 + policy.jitter_factor)


def test_delay_grows_exponentially_until_capped():
    policy = RetryPolicy(initial_delay_ms=1000, max_delay_ms=5000, backoff_multiplier=2.0, jitter_factor=0.0)
    executor = RetryExecutor(policy)

    assert [executor.compute_delay(a) for a in range(1, 6)] == [1000, 2000, 4000, 5000, 5000]


@pytest.mark.asyncio
async def test_three_timeouts_then_success_waits_full_backoff():
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=3, initial_delay_ms=1000, backoff_multiplier=2.0, jitter_factor=0.2)
    executor = RetryExecutor(policy, sleep=sleep)
    operation, calls = flaky(3, lambda: Exception("Request timeout"))

    result = await executor.execute_with_retry(operation, "test")

    assert result == "ok"
    assert calls["count"] == 4
    assert len(sleep.calls) == 3
    assert sum(sleep.calls) >= (1000 + 2000 + 4000) * (1 - policy.jitter_factor) / 1000


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    sleep = RecordingSleep()
    executor = RetryExecutor(RetryPolicy(max_retries=3), sleep=sleep)
    error = RetryableTransportError("upstream returned 503", status_code=503)
    operation, calls = flaky(100, lambda: error)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await executor.execute_with_retry(operation, "test")

    assert calls["count"] == 4
    assert exc_info.value.attempts == 4
    assert exc_info.value.last_error is error


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately():
    sleep = RecordingSleep()
    executor = RetryExecutor(RetryPolicy(max_retries=3), sleep=sleep)
    operation, calls = flaky(100, lambda: NonRetryableError("bad request: timeout field missing", status_code=400))

    with pytest.raises(NonRetryableError):
        await executor.execute_with_retry(operation, "test")

    assert calls["count"] == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_unknown_error_without_matching_pattern_is_not_retried():
    executor = RetryExecutor(RetryPolicy(max_retries=3), sleep=RecordingSleep())
    operation, calls = flaky(100, lambda: ValueError("malformed transcript payload"))

    with pytest.raises(ValueError):
        await executor.execute_with_retry(operation, "test")

    assert calls["count"] == 1


def test_classification():
    executor = RetryExecutor(RetryPolicy())

    assert executor.is_retryable(RetryableTransportError("boom"))
    assert executor.is_retryable(httpx.ConnectTimeout("connect timed out"))
    assert executor.is_retryable(Exception("Rate limit exceeded"))
    assert executor.is_retryable(StatusError("upstream failure", 503))
    assert executor.is_retryable(StatusError("slow down", 429))
    assert not executor.is_retryable(StatusError("not found", 404))
    assert not executor.is_retryable(NonRetryableError("Service temporarily unavailable"))


def test_openai_transport_errors_are_retryable():
    executor = RetryExecutor(RetryPolicy())
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

    assert executor.is_retryable(openai.APITimeoutError(request=request))
    assert executor.is_retryable(openai.APIConnectionError(request=request))


@pytest.mark.asyncio
async def test_openai_timeout_is_retried_until_success():
    request = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")
    operation, calls = flaky(2, lambda: openai.APITimeoutError(request=request))
    executor = RetryExecutor(RetryPolicy(max_retries=3, jitter_factor=0.0), sleep=RecordingSleep())

    assert await executor.execute_with_retry(operation, "llm:note-generation") == "ok"
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_retry_state_reports_attempts():
    executor = RetryExecutor(RetryPolicy(max_retries=3, jitter_factor=0.0, initial_delay_ms=10), sleep=RecordingSleep())
    operation, _ = flaky(2, lambda: RetryableTransportError("blip"))
    state = RetryState()

    await executor.execute_with_retry(operation, "test", state=state)

    assert state.attempt == 3
    assert state.delay_ms == 20


@pytest.mark.asyncio
async def test_cancelling_caller_cancels_backoff_sleep():
    sleeping = asyncio.Event()

    async def blocking_sleep(seconds):
        sleeping.set()
        await asyncio.sleep(3600)

    executor = RetryExecutor(RetryPolicy(max_retries=3), sleep=blocking_sleep)
    operation, calls = flaky(100, lambda: RetryableTransportError("blip"))

    task = asyncio.create_task(executor.execute_with_retry(operation, "test"))
    await sleeping.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert calls["count"] == 1
