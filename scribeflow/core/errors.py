"""
Error taxonomy for the ingestion pipeline.

External calls fail with an ``ExternalServiceError``; whether it is worth
retrying is decided by ``RetryExecutor.is_retryable``. The two explicit
subclasses short-circuit that decision.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ExternalServiceError(PipelineError):
    """A call to a third-party service (ASR, LLM, storage) failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, service: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.service = service


class RetryableTransportError(ExternalServiceError):
    """Timeouts, 429/5xx responses and transient network failures."""


class NonRetryableError(ExternalServiceError):
    """4xx responses other than 429, malformed input."""


class CircuitOpenError(PipelineError):
    """Raised without calling the operation while a circuit is open."""

    def __init__(self, circuit_name: str, retry_after_ms: int):
        super().__init__(
            f"Circuit breaker is open for {circuit_name}. Try again in {retry_after_ms}ms."
        )
        self.circuit_name = circuit_name
        self.retry_after_ms = retry_after_ms


class RetryExhaustedError(PipelineError):
    """All retry attempts failed; ``last_error`` holds the final cause."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"Operation failed after {attempts} attempts: {detail}")
        self.attempts = attempts
        self.last_error = last_error


class NoProviderAvailableError(PipelineError):
    """No transcription provider can be started."""

    def __init__(self, message: str = "No transcription provider is available"):
        super().__init__(message)


class ProviderStateError(PipelineError):
    """A provider command is not valid in the provider's current state."""


class SessionNotFoundError(PipelineError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id
