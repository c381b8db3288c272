"""Test doubles shared across the test modules."""
import asyncio
from typing import List, Optional

from scribeflow.core.errors import RetryableTransportError
from scribeflow.models.transcript import Fragment
from scribeflow.models.workflow import (
    ClinicalNote,
    CodeSuggestion,
    CodeSuggestionList,
    ExtractedTask,
    TaskList,
)
from scribeflow.services.storage import TranscriptStore


async def no_sleep(seconds: float) -> None:
    return None


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Polls ``predicate`` until it holds, yielding to the event loop in between."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_fragment(text: str = "hello", session_id: str = "s1", confidence: float = 0.9, offset: int = 0, **kwargs) -> Fragment:
    return Fragment(session_id=session_id, text=text, confidence=confidence, start_offset_ms=offset, end_offset_ms=offset, **kwargs)


class FakeStore(TranscriptStore):
    """
    In-memory store with scripted failures.

    ``failures`` retryable failures are raised before writes succeed; -1 fails
    forever. ``partial`` writes acknowledge one id too few.
    """

    def __init__(self, failures: int = 0, partial: int = 0, delay: float = 0.0):
        self.failures = failures
        self.partial = partial
        self.delay = delay
        self.calls = 0
        self.batches: List[List[str]] = []
        self.rows: List[dict] = []
        self.active = 0
        self.max_active = 0

    async def insert_batch(self, fragments: List[Fragment]) -> List[str]:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                if self.failures > 0:
                    self.failures -= 1
                raise RetryableTransportError("service temporarily unavailable", status_code=503, service="fake")
            ids = [f"row-{len(self.rows) + i}" for i in range(len(fragments))]
            if self.partial:
                self.partial -= 1
                return ids[:-1]
            for fragment, row_id in zip(fragments, ids):
                self.rows.append({"id": row_id, "session_id": fragment.session_id, "text": fragment.text})
            self.batches.append([fragment.text for fragment in fragments])
            return ids
        finally:
            self.active -= 1

    async def list_session(self, session_id: str) -> List[dict]:
        return [row for row in self.rows if row["session_id"] == session_id]


class FakeGenerator:
    def __init__(
        self,
        note_error: Optional[Exception] = None,
        tasks_error: Optional[Exception] = None,
        codes_error: Optional[Exception] = None,
    ):
        self.note_error = note_error
        self.tasks_error = tasks_error
        self.codes_error = codes_error
        self.transcripts: List[str] = []
        self.notes: List[ClinicalNote] = []

    async def generate_note(self, transcript: str) -> ClinicalNote:
        self.transcripts.append(transcript)
        if self.note_error is not None:
            raise self.note_error
        if not transcript.strip():
            raise ValueError("insufficient context")
        return ClinicalNote(content=f"S: {transcript}\nO: -\nA: URI\nP: rest")

    async def extract_tasks(self, note: ClinicalNote) -> TaskList:
        self.notes.append(note)
        if self.tasks_error is not None:
            raise self.tasks_error
        return TaskList(tasks=[ExtractedTask(title="Order CBC", priority="high", category="diagnostic")])

    async def suggest_codes(self, note: ClinicalNote) -> CodeSuggestionList:
        self.notes.append(note)
        if self.codes_error is not None:
            raise self.codes_error
        return CodeSuggestionList(
            codes=[CodeSuggestion(code="J06.9", label="Acute upper respiratory infection", confidence=0.9)]
        )
