"""
Circuit breaker for named classes of external operations.

A breaker owns the state of exactly one operation class (e.g. ``storage:insert``).
``CircuitBreakerRegistry`` composes breakers with a ``RetryExecutor`` so that an
open circuit fails fast before any retry budget is spent.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from scribeflow.config import Settings
from scribeflow.core.errors import CircuitOpenError
from scribeflow.core.logging import get_logger
from scribeflow.core.retry import RetryExecutor, RetryPolicy, RetryState

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitConfig:
    failure_threshold: int = 5
    reset_timeout_ms: int = 60000
    success_threshold: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitConfig":
        return cls(
            failure_threshold=settings.failure_threshold,
            reset_timeout_ms=settings.reset_timeout_ms,
            success_threshold=settings.success_threshold,
        )


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: Optional[CircuitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def _elapsed_ms(self) -> float:
        if self._last_failure_time is None:
            return float("inf")
        return (self._clock() - self._last_failure_time) * 1000.0

    async def execute(self, operation: Callable[[], Awaitable[T]], context: Optional[str] = None) -> T:
        context = context or self.name

        if self._state == CircuitState.OPEN:
            elapsed = self._elapsed_ms()
            if elapsed > self.config.reset_timeout_ms:
                logger.info("circuit_half_open", circuit=self.name, operation=context)
                self._state = CircuitState.HALF_OPEN
                # A recovering circuit only has to work off success_threshold failures
                self._failures = min(self._failures, self.config.success_threshold)
            else:
                retry_after = max(0, int(self.config.reset_timeout_ms - elapsed))
                raise CircuitOpenError(self.name, retry_after)

        try:
            result = await operation()
        except Exception:
            self._record_failure(context)
            raise

        if self._state == CircuitState.HALF_OPEN:
            self._failures = max(0, self._failures - 1)
            if self._failures == 0:
                logger.info("circuit_closed", circuit=self.name, operation=context)
                self._state = CircuitState.CLOSED
        return result

    def _record_failure(self, context: str) -> None:
        self._failures += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            logger.warning("circuit_reopened", circuit=self.name, operation=context, failures=self._failures)
            self._state = CircuitState.OPEN
        elif self._state == CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
            logger.error("circuit_opened", circuit=self.name, operation=context, failures=self._failures)
            self._state = CircuitState.OPEN

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._failures,
            "threshold": self.config.failure_threshold,
        }

    def reset(self) -> None:
        self._failures = 0
        self._last_failure_time = None
        self._state = CircuitState.CLOSED
        logger.info("circuit_reset", circuit=self.name)


class CircuitBreakerRegistry:
    """Injectable store of breakers, one per operation class."""

    def __init__(
        self,
        retry: Optional[RetryExecutor] = None,
        config: Optional[CircuitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retry = retry or RetryExecutor()
        self.config = config or CircuitConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerRegistry":
        return cls(
            retry=RetryExecutor(RetryPolicy.from_settings(settings)),
            config=CircuitConfig.from_settings(settings),
        )

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self.config, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    async def call(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        context: Optional[str] = None,
        state: Optional[RetryState] = None,
    ) -> T:
        """Breaker outside, retry inside."""
        context = context or name
        return await self.get(name).execute(
            lambda: self.retry.execute_with_retry(operation, context, state=state),
            context,
        )

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_state() for name, breaker in self._breakers.items()}
