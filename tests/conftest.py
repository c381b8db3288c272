"""Pytest configuration and fixtures."""
import os

import pytest

# Set test environment before importing the app
os.environ["API_SECRET_KEY"] = "test-secret-key"
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["OPENAI_API_KEY"] = ""
os.environ["ASSEMBLYAI_API_KEY"] = ""
os.environ["STORAGE_BACKEND"] = "memory"

from scribeflow.core.circuit import CircuitBreakerRegistry, CircuitConfig
from scribeflow.core.retry import RetryExecutor, RetryPolicy

from fakes import FakeGenerator, FakeStore, no_sleep


@pytest.fixture
def retry_policy():
    """Fast policy: two retries, tiny delays."""
    return RetryPolicy(max_retries=2, initial_delay_ms=1, max_delay_ms=5, jitter_factor=0.0)


@pytest.fixture
def resilience(retry_policy):
    """Breaker registry whose backoff never actually sleeps."""
    return CircuitBreakerRegistry(
        retry=RetryExecutor(retry_policy, sleep=no_sleep),
        config=CircuitConfig(failure_threshold=50, reset_timeout_ms=60000, success_threshold=2),
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def generator():
    return FakeGenerator()
