"""
Recording sessions.

A session owns one provider selection, one ingestion queue, one turn
detector and one workflow orchestrator. Provider events are consumed by a
single pump task, so fragments reach the queue in the order the provider
produced them.
"""

import asyncio
import time
import uuid
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from scribeflow.config import Settings
from scribeflow.core.circuit import CircuitBreakerRegistry
from scribeflow.core.errors import ProviderStateError, SessionNotFoundError
from scribeflow.core.logging import get_logger, audit_logger
from scribeflow.models.transcript import Fragment, Speaker, SpeakerSource, SyncWarning
from scribeflow.models.workflow import StepResult, WorkflowResult, WorkflowState
from scribeflow.services.ingestion import IngestionConfig, IngestionQueue
from scribeflow.services.metrics import PipelineMetrics
from scribeflow.services.providers import (
    AudioChunk,
    BrowserRelayProvider,
    ChunkedTranscriptionProvider,
    ProviderCommandResult,
    ProviderError,
    ProviderSelector,
    RecognitionResult,
    TranscriptionProvider,
    build_providers,
)
from scribeflow.services.storage import TranscriptStore
from scribeflow.services.turn_detection import SpeakerLabelMap, TurnDetector, TurnDetectorConfig
from scribeflow.services.workflow import WorkflowOrchestrator

logger = get_logger(__name__)

SPEAKER_NAMES = {Speaker.PRIMARY: "Clinician", Speaker.SECONDARY: "Patient"}

ProviderFactory = Callable[[Settings, CircuitBreakerRegistry], List[TranscriptionProvider]]

_CLOSED = object()


class EventChannel:
    """
    Bounded per-session event stream feeding the SSE endpoint.

    Publishing never blocks. When the channel is full the oldest event is
    dropped, every event being a complete snapshot of what it reports.
    """

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def publish(self, event: Dict[str, Any]) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(_CLOSED)
        self.closed = True

    def drain_nowait(self) -> List[Dict[str, Any]]:
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not _CLOSED:
                events.append(event)
        return events

    async def get(self) -> Optional[Dict[str, Any]]:
        """Next event, or None once the channel is closed. Safe to cancel."""
        event = await self._queue.get()
        if event is _CLOSED:
            # Leave the marker for any other reader
            self._queue.put_nowait(_CLOSED)
            return None
        return event

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class RecordingSession:
    def __init__(
        self,
        session_id: str,
        selector: ProviderSelector,
        store: TranscriptStore,
        resilience: CircuitBreakerRegistry,
        generator,
        ingestion_config: Optional[IngestionConfig] = None,
        turn_config: Optional[TurnDetectorConfig] = None,
        max_restarts: int = 3,
        event_channel_size: int = 100,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self.id = session_id
        self.selector = selector
        self.resilience = resilience
        self.max_restarts = max_restarts
        self._metrics = metrics

        self.events = EventChannel(maxsize=event_channel_size)
        self.detector = TurnDetector(turn_config)
        self.label_map = SpeakerLabelMap()
        self.queue = IngestionQueue(
            session_id,
            store,
            resilience,
            config=ingestion_config,
            on_warning=self._on_warning,
            metrics=metrics,
        )
        self.orchestrator = WorkflowOrchestrator(
            generator,
            session_id=session_id,
            publish=self._on_workflow_state,
            metrics=metrics,
        )

        self.fragments: List[Fragment] = []
        self.warnings: List[SyncWarning] = []
        self.interim_text: Optional[str] = None
        self.restarts = 0
        self.result: Optional[WorkflowResult] = None
        self.stopped = False
        self._started_at = time.monotonic()
        self._pump: Optional[asyncio.Task] = None

    @property
    def provider(self) -> Optional[TranscriptionProvider]:
        return self.selector.active

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started_at) * 1000)

    def _on_warning(self, warning: SyncWarning) -> None:
        self.warnings.append(warning)
        self.events.publish({"type": "sync_warning", **warning.model_dump(mode="json")})

    def _on_workflow_state(self, state: WorkflowState) -> None:
        self.events.publish({"type": "workflow", **state.model_dump(mode="json")})

    def _publish_provider(self, result: ProviderCommandResult, event: str) -> None:
        self.events.publish({"type": "provider", "event": event, **result.model_dump(mode="json")})
        audit_logger.log_provider_event(
            session_id=self.id,
            provider_id=result.provider_id or "none",
            event=event,
            success=result.success,
        )

    async def start(self, preferred: Optional[str] = "auto") -> ProviderCommandResult:
        result = await self.selector.start(preferred)
        if result.success:
            self._started_at = time.monotonic()
            self._pump = asyncio.create_task(self._consume(self.selector.active))
        self._publish_provider(result, "start")
        return result

    async def _consume(self, provider: TranscriptionProvider) -> None:
        async for event in provider.stream():
            try:
                if isinstance(event, RecognitionResult):
                    await self._handle_result(event, provider)
                else:
                    await self._handle_error(event, provider)
            except Exception as e:
                logger.error(f"Failed to handle provider event for session {self.id}: {e}", exc_info=True)

    async def _handle_result(self, result: RecognitionResult, provider: TranscriptionProvider) -> None:
        text = result.text.strip()
        if not text:
            return
        if not result.is_final:
            self.interim_text = text
            self.events.publish({"type": "interim", "text": text})
            return
        self.interim_text = None

        start = result.start_offset_ms if result.start_offset_ms is not None else self._elapsed_ms()
        end = result.end_offset_ms if result.end_offset_ms is not None else start

        speaker = self.label_map.resolve(result.speaker_label)
        if speaker is not None:
            self.detector.observe(speaker, start, end)
            source = SpeakerSource.PROVIDER
        else:
            speaker = self.detector.assign_speaker(text, start, end)
            source = SpeakerSource.HEURISTIC

        fragment = Fragment(
            session_id=self.id,
            text=text,
            speaker=speaker,
            speaker_source=source,
            is_final=True,
            confidence=result.confidence,
            start_offset_ms=start,
            end_offset_ms=max(end, start),
            provider_id=provider.provider_id.value,
            alternatives=result.alternatives,
        )
        self.fragments.append(fragment)
        await self.queue.enqueue(fragment)

    async def _handle_error(self, error: ProviderError, provider: TranscriptionProvider) -> None:
        provider_id = provider.provider_id.value
        logger.warning(f"Provider {provider_id} reported {error.code} for session {self.id}: {error.message}")
        self.events.publish({"type": "provider_error", "provider_id": provider_id, **error.model_dump()})
        audit_logger.log_provider_event(
            session_id=self.id,
            provider_id=provider_id,
            event="error",
            code=error.code,
            recoverable=error.recoverable,
        )

        if self.stopped or not error.recoverable:
            return
        if self.restarts >= self.max_restarts:
            logger.error(f"Provider {provider_id} exceeded {self.max_restarts} restarts for session {self.id}")
            return
        try:
            await provider.restart()
        except ProviderStateError as e:
            logger.warning(f"Could not restart provider {provider_id}: {e}")
            return
        self.restarts += 1
        if self._metrics:
            self._metrics.provider_restarts.labels(provider=provider_id).inc()
        audit_logger.log_provider_event(session_id=self.id, provider_id=provider_id, event="restart", restarts=self.restarts)

    async def pause(self) -> ProviderCommandResult:
        result = await self.selector.pause()
        self._publish_provider(result, "pause")
        return result

    async def resume(self) -> ProviderCommandResult:
        result = await self.selector.resume()
        self._publish_provider(result, "resume")
        return result

    def _require_provider(self, kind: type) -> TranscriptionProvider:
        provider = self.selector.active
        if self.stopped or provider is None:
            raise ProviderStateError(f"Session {self.id} is not recording")
        if not isinstance(provider, kind):
            raise ProviderStateError(f"Provider {provider.provider_id.value} does not accept this input")
        return provider

    async def feed_audio(self, chunk: AudioChunk) -> bool:
        return await self._require_provider(ChunkedTranscriptionProvider).feed_audio(chunk)

    async def submit_result(self, result: RecognitionResult) -> bool:
        return await self._require_provider(BrowserRelayProvider).submit(result)

    async def report_error(self, code: str) -> None:
        await self._require_provider(BrowserRelayProvider).report_error(code)

    def transcript_text(self) -> str:
        ordered = sorted(self.fragments, key=lambda fragment: fragment.start_offset_ms)
        return "\n".join(f"{SPEAKER_NAMES[fragment.speaker]}: {fragment.text}" for fragment in ordered)

    async def stop(self) -> WorkflowResult:
        """
        Stops the provider, writes everything still pending and runs the
        workflow on the finished transcript.
        """
        if self.stopped:
            raise ProviderStateError(f"Session {self.id} has already been stopped")
        self.stopped = True

        result = await self.selector.stop()
        self._publish_provider(result, "stop")
        if self._pump is not None:
            await self._pump

        stats = await self.queue.drain()
        logger.info(
            f"Recording stopped for session {self.id}",
            saved=stats.saved_chunks,
            failed=stats.failed_chunks,
        )

        self.result = await self.orchestrator.run_complete_pipeline(self.id, self.transcript_text())
        self.events.publish({"type": "completed", **self.result.model_dump(mode="json")})
        return self.result

    async def run_step(self, name: str, data: Optional[Dict[str, Any]] = None) -> StepResult:
        data = dict(data or {})
        data.setdefault("transcript", self.transcript_text())
        return await self.orchestrator.run_step(name, self.id, data)

    async def retry_failed(self) -> int:
        return await self.queue.retry_failed()

    def status(self) -> Dict[str, Any]:
        provider = self.selector.active
        return {
            "session_id": self.id,
            "provider_id": provider.provider_id.value if provider else None,
            "provider_state": provider.state.value if provider else None,
            "available_providers": self.selector.available_providers(),
            "restarts": self.restarts,
            "stopped": self.stopped,
            "interim_text": self.interim_text,
            "stats": self.queue.stats().model_dump(mode="json"),
            "circuits": self.resilience.snapshot(),
            "workflow": self.orchestrator.get_state().model_dump(mode="json"),
            "warnings": len(self.warnings),
        }

    async def close(self) -> None:
        if not self.stopped:
            self.stopped = True
            await self.selector.stop()
            if self._pump is not None:
                await self._pump
        await self.queue.close()
        self.events.close()


class SessionManager:
    """Registry of live recording sessions, one per application instance."""

    def __init__(
        self,
        settings: Settings,
        store: TranscriptStore,
        resilience: CircuitBreakerRegistry,
        generator,
        provider_factory: Optional[ProviderFactory] = None,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self.settings = settings
        self.store = store
        self.resilience = resilience
        self.generator = generator
        self.provider_factory = provider_factory or build_providers
        self.metrics = metrics
        self._sessions: Dict[str, RecordingSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self, preferred: Optional[str] = None, session_id: Optional[str] = None) -> RecordingSession:
        """Starts a recording; raises ``NoProviderAvailableError`` before anything is registered."""
        session_id = session_id or str(uuid.uuid4())
        session = RecordingSession(
            session_id,
            ProviderSelector(self.provider_factory(self.settings, self.resilience)),
            self.store,
            self.resilience,
            self.generator,
            ingestion_config=IngestionConfig.from_settings(self.settings),
            turn_config=TurnDetectorConfig.from_settings(self.settings),
            max_restarts=self.settings.max_provider_restarts,
            event_channel_size=self.settings.event_channel_size,
            metrics=self.metrics,
        )
        await session.start(preferred or self.settings.default_provider)
        self._sessions[session_id] = session
        logger.info(f"Session {session_id} started with provider {session.provider.provider_id.value}")
        return session

    def get(self, session_id: str) -> RecordingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self) -> List[str]:
        return list(self._sessions)

    async def remove(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        await session.close()

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.remove(session_id)
        await self.store.close()
