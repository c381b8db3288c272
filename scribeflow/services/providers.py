"""
Speech-to-Text Providers
Interchangeable transcription providers behind one capability set
(start, stop, pause, resume, restart) with results delivered through a
bounded event queue.
"""

import asyncio
import io
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, Iterable, List, Optional, Sequence, Union

import assemblyai as aai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from scribeflow.config import ProviderId, Settings
from scribeflow.core.circuit import CircuitBreakerRegistry
from scribeflow.core.errors import (
    CircuitOpenError,
    ExternalServiceError,
    NoProviderAvailableError,
    ProviderStateError,
    RetryableTransportError,
    RetryExhaustedError,
)
from scribeflow.core.logging import get_logger
from scribeflow.models.transcript import Alternative

logger = get_logger(__name__)

# Professional streaming ASR first, generic browser recognition last
PROVIDER_PRIORITY = (ProviderId.ASSEMBLYAI, ProviderId.OPENAI, ProviderId.BROWSER)

BROWSER_ERROR_MESSAGES = {
    "no-speech": "No speech detected. Please try again.",
    "audio-capture": "Microphone not accessible. Please check permissions.",
    "not-allowed": "Microphone permission denied. Please grant access.",
    "network": "Network error. Please check your connection.",
    "aborted": "Transcription aborted.",
}
RECOVERABLE_BROWSER_ERRORS = {"no-speech", "audio-capture", "network"}


class ProviderState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


class RecognitionResult(BaseModel):
    """One recognition result as delivered by a provider"""
    text: str
    is_final: bool = True
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    start_offset_ms: Optional[int] = Field(default=None, ge=0)
    end_offset_ms: Optional[int] = Field(default=None, ge=0)
    speaker_label: Optional[str] = Field(default=None, description="Native diarization label, if any")
    alternatives: List[Alternative] = Field(default_factory=list)


class ProviderError(BaseModel):
    message: str
    code: str
    recoverable: bool = False


ProviderEvent = Union[RecognitionResult, ProviderError]


class ProviderCommandResult(BaseModel):
    success: bool
    provider_id: Optional[str] = None
    state: Optional[ProviderState] = None
    message: str = ""


@dataclass
class AudioChunk:
    data: bytes
    offset_ms: int = 0
    duration_ms: int = 0
    content_type: str = "audio/wav"
    filename: str = "chunk.wav"


_END_OF_STREAM = object()


class TranscriptionProvider(ABC):
    provider_id: ProviderId

    def __init__(self, buffer_size: int = 256):
        self.state = ProviderState.IDLE
        self.restarts = 0
        self.events: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)

    @abstractmethod
    def is_available(self) -> bool: ...

    async def _on_start(self) -> None:
        return None

    async def _on_stop(self) -> None:
        return None

    async def start(self) -> None:
        if self.state in (ProviderState.RUNNING, ProviderState.PAUSED):
            raise ProviderStateError(f"Provider {self.provider_id.value} is already {self.state.value}")
        if self.state == ProviderState.STOPPED:
            raise ProviderStateError(f"Provider {self.provider_id.value} has been stopped")
        await self._on_start()
        self.state = ProviderState.RUNNING
        logger.info(f"Provider {self.provider_id.value} started")

    async def stop(self) -> None:
        """Finishes outstanding work, then closes the event stream."""
        if self.state == ProviderState.STOPPED:
            return
        await self._on_stop()
        self.state = ProviderState.STOPPED
        await self.events.put(_END_OF_STREAM)
        logger.info(f"Provider {self.provider_id.value} stopped")

    async def pause(self) -> None:
        if self.state != ProviderState.RUNNING:
            raise ProviderStateError(f"Cannot pause provider {self.provider_id.value} while {self.state.value}")
        self.state = ProviderState.PAUSED

    async def resume(self) -> None:
        if self.state != ProviderState.PAUSED:
            raise ProviderStateError(f"Cannot resume provider {self.provider_id.value} while {self.state.value}")
        self.state = ProviderState.RUNNING

    async def restart(self) -> None:
        if self.state in (ProviderState.IDLE, ProviderState.STOPPED):
            raise ProviderStateError(f"Cannot restart provider {self.provider_id.value} while {self.state.value}")
        self.restarts += 1
        self.state = ProviderState.RUNNING
        logger.info(f"Provider {self.provider_id.value} restarted", restarts=self.restarts)

    async def _emit(self, event: ProviderEvent) -> None:
        # Blocks when the consumer falls behind
        await self.events.put(event)

    async def _emit_error(self, message: str, code: str, recoverable: bool) -> None:
        self.state = ProviderState.ERROR
        await self._emit(ProviderError(message=message, code=code, recoverable=recoverable))

    async def stream(self) -> AsyncIterator[ProviderEvent]:
        while True:
            event = await self.events.get()
            if event is _END_OF_STREAM:
                return
            yield event


class ChunkedTranscriptionProvider(TranscriptionProvider):
    """Transcribes uploaded audio chunks one at a time on a worker task."""

    def __init__(self, resilience: CircuitBreakerRegistry, buffer_size: int = 256, language: str = "en"):
        super().__init__(buffer_size=buffer_size)
        self.resilience = resilience
        self.language = language
        self._audio: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._worker: Optional[asyncio.Task] = None

    @property
    def operation_name(self) -> str:
        return f"asr:{self.provider_id.value}"

    @abstractmethod
    async def transcribe(self, chunk: AudioChunk) -> List[RecognitionResult]: ...

    async def _on_start(self) -> None:
        self._worker = asyncio.create_task(self._run())

    async def _on_stop(self) -> None:
        if self._worker is None:
            return
        await self._audio.put(None)
        await self._worker

    async def feed_audio(self, chunk: AudioChunk) -> bool:
        """Queues a chunk for transcription. Audio received while paused is dropped."""
        if self.state == ProviderState.PAUSED:
            logger.debug(f"Dropping audio chunk at {chunk.offset_ms}ms, provider {self.provider_id.value} is paused")
            return False
        if self.state != ProviderState.RUNNING:
            raise ProviderStateError(f"Provider {self.provider_id.value} is {self.state.value}")
        await self._audio.put(chunk)
        return True

    async def _run(self) -> None:
        while True:
            chunk = await self._audio.get()
            if chunk is None:
                return
            try:
                results = await self.resilience.call(
                    self.operation_name,
                    lambda: self.transcribe(chunk),
                )
            except Exception as e:
                recoverable = isinstance(e, (RetryExhaustedError, CircuitOpenError, RetryableTransportError))
                logger.error(f"Transcription of chunk at {chunk.offset_ms}ms failed with {self.provider_id.value}: {e}")
                await self._emit_error(str(e), code=type(e).__name__, recoverable=recoverable)
                continue
            for result in results:
                await self._emit(result)


class AssemblyAIProvider(ChunkedTranscriptionProvider):
    """AssemblyAI transcription with native speaker labels."""

    provider_id = ProviderId.ASSEMBLYAI

    def __init__(
        self,
        api_key: str,
        resilience: CircuitBreakerRegistry,
        base_url: Optional[str] = None,
        buffer_size: int = 256,
        language: str = "en",
    ):
        super().__init__(resilience, buffer_size=buffer_size, language=language)
        self.api_key = api_key
        if api_key:
            aai.settings.api_key = api_key
            if base_url:
                aai.settings.base_url = base_url
                logger.info(f"Configured AssemblyAI client to use base URL: {base_url}")

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _config(self) -> aai.TranscriptionConfig:
        config_params = {"speaker_labels": True}
        if self.language == "auto":
            config_params["language_detection"] = True
        else:
            config_params["language_code"] = self.language
        return aai.TranscriptionConfig(**config_params)

    async def transcribe(self, chunk: AudioChunk) -> List[RecognitionResult]:
        transcriber = aai.Transcriber(config=self._config())
        # The SDK call is synchronous
        transcript = await asyncio.to_thread(transcriber.transcribe, io.BytesIO(chunk.data))

        if transcript.status == aai.TranscriptStatus.error:
            raise ExternalServiceError(f"AssemblyAI transcription failed: {transcript.error}", service="assemblyai")

        logger.info(f"AssemblyAI transcript {transcript.id}: {len(transcript.text or '')} characters")
        return self.to_results(transcript, chunk.offset_ms)

    @staticmethod
    def to_results(transcript, offset_ms: int) -> List[RecognitionResult]:
        if transcript.utterances:
            return [
                RecognitionResult(
                    text=utt.text,
                    is_final=True,
                    confidence=utt.confidence or 0.0,
                    start_offset_ms=offset_ms + utt.start,
                    end_offset_ms=offset_ms + utt.end,
                    speaker_label=utt.speaker,
                )
                for utt in transcript.utterances
                if utt.text and utt.text.strip()
            ]
        if transcript.text and transcript.text.strip():
            return [
                RecognitionResult(
                    text=transcript.text.strip(),
                    is_final=True,
                    confidence=transcript.confidence or 0.0,
                    start_offset_ms=offset_ms,
                )
            ]
        return []


def _mean_probability(logprobs: Optional[Iterable]) -> float:
    values = [math.exp(item.logprob) for item in (logprobs or []) if getattr(item, "logprob", None) is not None]
    if not values:
        return 0.0
    return min(1.0, max(0.0, sum(values) / len(values)))


class OpenAITranscribeProvider(ChunkedTranscriptionProvider):
    """OpenAI speech-to-text for uploaded chunks. No diarization."""

    provider_id = ProviderId.OPENAI

    def __init__(
        self,
        api_key: str,
        resilience: CircuitBreakerRegistry,
        model: str = "gpt-4o-mini-transcribe",
        timeout: float = 60.0,
        buffer_size: int = 256,
        language: str = "en",
    ):
        super().__init__(resilience, buffer_size=buffer_size, language=language)
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client: Optional[AsyncOpenAI] = None

    def is_available(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def transcribe(self, chunk: AudioChunk) -> List[RecognitionResult]:
        params = {
            "model": self.model,
            "file": (chunk.filename, chunk.data, chunk.content_type),
            "response_format": "json",
        }
        if self.language != "auto":
            params["language"] = self.language
        if self.model.startswith("gpt-4o"):
            params["include"] = ["logprobs"]

        response = await self.client.audio.transcriptions.create(**params)
        text = (response.text or "").strip()
        if not text:
            return []
        return [
            RecognitionResult(
                text=text,
                is_final=True,
                confidence=_mean_probability(getattr(response, "logprobs", None)),
                start_offset_ms=chunk.offset_ms,
                end_offset_ms=chunk.offset_ms + chunk.duration_ms if chunk.duration_ms else None,
            )
        ]


class BrowserRelayProvider(TranscriptionProvider):
    """Relays results from the client's own recognizer (Web Speech API)."""

    provider_id = ProviderId.BROWSER

    def is_available(self) -> bool:
        return True

    async def submit(self, result: RecognitionResult) -> bool:
        if self.state == ProviderState.PAUSED:
            return False
        if self.state != ProviderState.RUNNING:
            raise ProviderStateError(f"Provider {self.provider_id.value} is {self.state.value}")
        await self._emit(result)
        return True

    async def report_error(self, code: str) -> None:
        message = BROWSER_ERROR_MESSAGES.get(code, f"Transcription error: {code}")
        await self._emit_error(message, code=code, recoverable=code in RECOVERABLE_BROWSER_ERRORS)


def select_provider(preferred: Optional[str], available: Sequence[str]) -> str:
    """
    Picks a provider id: the requested one when available, the highest
    priority one for "auto", otherwise the first available.
    """
    if not available:
        raise NoProviderAvailableError()
    if preferred and preferred != "auto" and preferred in available:
        return preferred
    if preferred in (None, "", "auto"):
        for provider_id in (pid.value for pid in PROVIDER_PRIORITY):
            if provider_id in available:
                return provider_id
    return available[0]


class ProviderSelector:
    """Owns the providers of one session and the currently active one."""

    def __init__(self, providers: Iterable[TranscriptionProvider]):
        self._providers: Dict[str, TranscriptionProvider] = {p.provider_id.value: p for p in providers}
        self.active: Optional[TranscriptionProvider] = None

    def get(self, provider_id: str) -> Optional[TranscriptionProvider]:
        return self._providers.get(provider_id)

    def available_providers(self) -> List[str]:
        ordered = [pid.value for pid in PROVIDER_PRIORITY if pid.value in self._providers]
        ordered += [pid for pid in self._providers if pid not in ordered]
        return [pid for pid in ordered if self._providers[pid].is_available()]

    def _result(self, success: bool, message: str) -> ProviderCommandResult:
        provider = self.active
        return ProviderCommandResult(
            success=success,
            provider_id=provider.provider_id.value if provider else None,
            state=provider.state if provider else None,
            message=message,
        )

    async def start(self, preferred: Optional[str] = "auto") -> ProviderCommandResult:
        if self.active is not None and self.active.state in (ProviderState.RUNNING, ProviderState.PAUSED):
            return self._result(False, "Transcription is already running")

        provider_id = select_provider(preferred, self.available_providers())
        provider = self._providers[provider_id]
        await provider.start()
        self.active = provider
        return self._result(True, f"Transcription started with {provider.provider_id.value}")

    async def _command(self, name: str, success_message: str) -> ProviderCommandResult:
        if self.active is None:
            return self._result(False, "No active provider")
        try:
            await getattr(self.active, name)()
        except ProviderStateError as e:
            return self._result(False, str(e))
        return self._result(True, success_message)

    async def stop(self) -> ProviderCommandResult:
        return await self._command("stop", "Transcription stopped")

    async def pause(self) -> ProviderCommandResult:
        return await self._command("pause", "Transcription paused")

    async def resume(self) -> ProviderCommandResult:
        return await self._command("resume", "Transcription resumed")

    async def restart(self) -> ProviderCommandResult:
        return await self._command("restart", "Transcription restarted")


def build_providers(settings: Settings, resilience: CircuitBreakerRegistry) -> List[TranscriptionProvider]:
    return [
        AssemblyAIProvider(
            settings.assemblyai_api_key,
            resilience,
            base_url=settings.assemblyai_api_base_url,
            buffer_size=settings.provider_event_buffer,
            language=settings.language,
        ),
        OpenAITranscribeProvider(
            settings.openai_api_key,
            resilience,
            model=settings.default_stt_model.value,
            timeout=settings.stt_timeout,
            buffer_size=settings.provider_event_buffer,
            language=settings.language,
        ),
        BrowserRelayProvider(buffer_size=settings.provider_event_buffer),
    ]
