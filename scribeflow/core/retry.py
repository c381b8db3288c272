"""
Retry with exponential backoff and jitter for calls to external services.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import httpx
from openai import APIConnectionError, APITimeoutError
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt

from scribeflow.config import Settings
from scribeflow.core.errors import NonRetryableError, RetryableTransportError, RetryExhaustedError
from scribeflow.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Transport failures that are retried regardless of the configured patterns
RETRYABLE_EXCEPTIONS = (
    RetryableTransportError,
    httpx.TimeoutException,
    httpx.NetworkError,
    APITimeoutError,
    APIConnectionError,
)


@dataclass
class RetryPolicy:
    max_retries: int = 5
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.2
    retryable_error_patterns: List[str] = field(
        default_factory=lambda: [
            "rate limit",
            "temporarily unavailable",
            "timeout",
            "network error",
            "429",
            "5xx",
        ]
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            initial_delay_ms=settings.initial_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            backoff_multiplier=settings.backoff_multiplier,
            jitter_factor=settings.jitter_factor,
            retryable_error_patterns=list(settings.retryable_error_patterns),
        )


@dataclass
class RetryState:
    """Per-call retry bookkeeping. Never shared between calls."""

    attempt: int = 0
    delay_ms: int = 0


def _error_status(error: BaseException) -> Optional[str]:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return str(status) if status is not None else None


def _status_matches(status: str, pattern: str) -> bool:
    # "5xx" style patterns match a whole status class
    if len(pattern) == 3 and pattern[0].isdigit() and pattern[1:].lower() == "xx":
        return len(status) == 3 and status[0] == pattern[0]
    return status == pattern


class RetryExecutor:
    """Runs an async operation, retrying retryable failures with backoff."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng

    def compute_delay(self, attempt: int) -> int:
        """Delay in ms before the retry that follows failed attempt ``attempt`` (1-based)."""
        policy = self.policy
        exponential = policy.initial_delay_ms * (policy.backoff_multiplier ** max(attempt - 1, 0))
        capped = min(exponential, policy.max_delay_ms)
        jitter_range = capped * policy.jitter_factor
        jitter = (self._rng() * 2 - 1) * jitter_range
        return max(0, int(capped + jitter))

    def is_retryable(self, error: BaseException) -> bool:
        if not isinstance(error, Exception):
            return False
        if isinstance(error, NonRetryableError):
            return False
        if isinstance(error, RETRYABLE_EXCEPTIONS):
            return True

        message = str(error).lower()
        status = _error_status(error)
        for pattern in self.policy.retryable_error_patterns:
            if pattern.lower() in message:
                return True
            if status is not None and _status_matches(status, pattern):
                return True
        return False

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "operation",
        state: Optional[RetryState] = None,
    ) -> T:
        """
        Runs ``operation`` until it succeeds, fails with a non-retryable error,
        or ``max_retries`` retries have been spent.
        """
        state = state if state is not None else RetryState()
        state.attempt = 0
        state.delay_ms = 0

        def _wait(retry_state: RetryCallState) -> float:
            state.delay_ms = self.compute_delay(retry_state.attempt_number)
            return state.delay_ms / 1000.0

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "retry_scheduled",
                operation=context,
                attempt=retry_state.attempt_number,
                max_retries=self.policy.max_retries,
                next_delay_ms=state.delay_ms,
                error=str(error),
            )

        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=_wait,
            retry=retry_if_exception(self.is_retryable),
            before_sleep=_before_sleep,
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    state.attempt = attempt.retry_state.attempt_number
                    result = await operation()
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            logger.error(
                "retry_exhausted",
                operation=context,
                attempts=exc.last_attempt.attempt_number,
                error=str(last_error),
            )
            raise RetryExhaustedError(exc.last_attempt.attempt_number, last_error) from last_error

        if state.attempt > 1:
            logger.info("retry_succeeded", operation=context, retries=state.attempt - 1)
        return result
