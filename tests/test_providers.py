"""Tests for provider selection and the provider implementations."""
import math
from types import SimpleNamespace

import pytest

from scribeflow.config import ProviderId
from scribeflow.core.errors import NoProviderAvailableError, NonRetryableError, RetryableTransportError
from scribeflow.services.providers import (
    AssemblyAIProvider,
    AudioChunk,
    BrowserRelayProvider,
    ChunkedTranscriptionProvider,
    OpenAITranscribeProvider,
    ProviderError,
    ProviderSelector,
    ProviderState,
    RecognitionResult,
    select_provider,
)


class ScriptedProvider(ChunkedTranscriptionProvider):
    """Chunk provider whose vendor call is scripted by the test."""

    provider_id = ProviderId.OPENAI

    def __init__(self, resilience, error=None, available=True):
        super().__init__(resilience, buffer_size=16)
        self.error = error
        self.available = available
        self.chunks = []

    def is_available(self):
        return self.available

    async def transcribe(self, chunk):
        self.chunks.append(chunk)
        if self.error is not None:
            raise self.error
        return [RecognitionResult(text=f"chunk at {chunk.offset_ms}", start_offset_ms=chunk.offset_ms)]


async def collect(provider):
    return [event async for event in provider.stream()]


@pytest.mark.parametrize(
    "preferred,available,expected",
    [
        ("browser", ["assemblyai", "browser"], "browser"),
        ("auto", ["browser", "openai"], "openai"),
        ("auto", ["browser", "openai", "assemblyai"], "assemblyai"),
        (None, ["browser"], "browser"),
        ("deepgram", ["browser", "openai"], "browser"),
        ("openai", ["browser"], "browser"),
    ],
)
def test_select_provider(preferred, available, expected):
    assert select_provider(preferred, available) == expected


def test_select_provider_without_candidates():
    with pytest.raises(NoProviderAvailableError):
        select_provider("auto", [])


@pytest.mark.asyncio
async def test_start_fails_when_nothing_is_available(resilience):
    selector = ProviderSelector([
        AssemblyAIProvider("", resilience),
        OpenAITranscribeProvider("", resilience),
    ])

    assert selector.available_providers() == []
    with pytest.raises(NoProviderAvailableError):
        await selector.start("auto")


@pytest.mark.asyncio
async def test_auto_prefers_professional_asr_over_browser(resilience):
    scripted = ScriptedProvider(resilience)
    selector = ProviderSelector([BrowserRelayProvider(), scripted])

    result = await selector.start("auto")

    assert result.success
    assert result.provider_id == "openai"
    assert selector.active is scripted
    await selector.stop()


@pytest.mark.asyncio
async def test_chunked_provider_emits_results_in_order(resilience):
    provider = ScriptedProvider(resilience)
    selector = ProviderSelector([provider])
    await selector.start()

    assert await provider.feed_audio(AudioChunk(data=b"a", offset_ms=0))
    assert await provider.feed_audio(AudioChunk(data=b"b", offset_ms=5000))
    await selector.stop()
    events = await collect(provider)

    assert [event.text for event in events] == ["chunk at 0", "chunk at 5000"]
    assert provider.state == ProviderState.STOPPED


@pytest.mark.asyncio
async def test_paused_provider_drops_audio(resilience):
    provider = ScriptedProvider(resilience)
    selector = ProviderSelector([provider])
    await selector.start()

    paused = await selector.pause()
    accepted = await provider.feed_audio(AudioChunk(data=b"a"))
    resumed = await selector.resume()

    assert paused.success and paused.state == ProviderState.PAUSED
    assert accepted is False
    assert resumed.success and resumed.state == ProviderState.RUNNING
    await selector.stop()
    assert await collect(provider) == []
    assert provider.chunks == []


@pytest.mark.asyncio
async def test_commands_report_invalid_state(resilience):
    selector = ProviderSelector([ScriptedProvider(resilience)])

    assert not (await selector.pause()).success

    await selector.start()
    result = await selector.resume()
    assert not result.success
    assert result.state == ProviderState.RUNNING

    again = await selector.start()
    assert not again.success
    await selector.stop()


@pytest.mark.asyncio
async def test_exhausted_transport_errors_are_recoverable(resilience):
    provider = ScriptedProvider(resilience, error=RetryableTransportError("network error"))
    await provider.start()

    await provider.feed_audio(AudioChunk(data=b"a"))
    event = await provider.events.get()

    assert isinstance(event, ProviderError)
    assert event.recoverable
    assert event.code == "RetryExhaustedError"
    assert provider.state == ProviderState.ERROR
    assert len(provider.chunks) == 3
    await provider.stop()


@pytest.mark.asyncio
async def test_non_retryable_errors_are_not_recoverable(resilience):
    provider = ScriptedProvider(resilience, error=NonRetryableError("unsupported audio", status_code=400))
    await provider.start()

    await provider.feed_audio(AudioChunk(data=b"a"))
    event = await provider.events.get()

    assert isinstance(event, ProviderError)
    assert not event.recoverable
    assert len(provider.chunks) == 1
    await provider.stop()


@pytest.mark.asyncio
async def test_browser_relay_passes_results_and_errors():
    provider = BrowserRelayProvider()
    await provider.start()

    assert await provider.submit(RecognitionResult(text="Hello doctor", confidence=0.8))
    await provider.report_error("no-speech")
    await provider.report_error("not-allowed")
    await provider.stop()
    events = await collect(provider)

    assert events[0].text == "Hello doctor"
    assert events[1] == ProviderError(message="No speech detected. Please try again.", code="no-speech", recoverable=True)
    assert events[2].recoverable is False
    assert events[2].message == "Microphone permission denied. Please grant access."


class FakeTranscriptions:
    def __init__(self, response):
        self.response = response
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.response


@pytest.mark.asyncio
async def test_openai_provider_derives_confidence_from_logprobs(resilience):
    provider = OpenAITranscribeProvider("sk-test", resilience, model="gpt-4o-mini-transcribe")
    transcriptions = FakeTranscriptions(
        SimpleNamespace(
            text=" Any chest pain? ",
            logprobs=[SimpleNamespace(logprob=0.0), SimpleNamespace(logprob=math.log(0.5))],
        )
    )
    provider._client = SimpleNamespace(audio=SimpleNamespace(transcriptions=transcriptions))

    results = await provider.transcribe(AudioChunk(data=b"RIFF", offset_ms=1000, duration_ms=4000))

    assert len(results) == 1
    assert results[0].text == "Any chest pain?"
    assert results[0].confidence == pytest.approx(0.75)
    assert results[0].start_offset_ms == 1000
    assert results[0].end_offset_ms == 5000
    assert transcriptions.kwargs["include"] == ["logprobs"]
    assert transcriptions.kwargs["language"] == "en"


@pytest.mark.asyncio
async def test_openai_provider_skips_empty_text(resilience):
    provider = OpenAITranscribeProvider("sk-test", resilience)
    provider._client = SimpleNamespace(
        audio=SimpleNamespace(transcriptions=FakeTranscriptions(SimpleNamespace(text="  ")))
    )

    assert await provider.transcribe(AudioChunk(data=b"RIFF")) == []


def test_assemblyai_utterances_keep_native_speaker_labels():
    transcript = SimpleNamespace(
        text="How are you? Not great.",
        confidence=0.9,
        utterances=[
            SimpleNamespace(text="How are you?", confidence=0.95, start=0, end=900, speaker="A"),
            SimpleNamespace(text="Not great.", confidence=0.85, start=1200, end=2000, speaker="B"),
        ],
    )

    results = AssemblyAIProvider.to_results(transcript, offset_ms=10_000)

    assert [(r.speaker_label, r.start_offset_ms, r.end_offset_ms) for r in results] == [
        ("A", 10_000, 10_900),
        ("B", 11_200, 12_000),
    ]


def test_availability_follows_configured_keys(resilience):
    assert not AssemblyAIProvider("", resilience).is_available()
    assert OpenAITranscribeProvider("sk-test", resilience).is_available()
    assert BrowserRelayProvider().is_available()
