"""
Transcript persistence adapters.

A store writes one batch of fragments atomically and returns one id per
fragment, in order. Anything else is treated as a failed write by the
ingestion queue.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from scribeflow.config import Settings, StorageBackend
from scribeflow.core.errors import NonRetryableError, RetryableTransportError
from scribeflow.core.logging import get_logger
from scribeflow.models.transcript import Fragment

logger = get_logger(__name__)


class TranscriptStore(ABC):
    @abstractmethod
    async def insert_batch(self, fragments: List[Fragment]) -> List[str]: ...

    @abstractmethod
    async def list_session(self, session_id: str) -> List[Dict[str, Any]]: ...

    async def close(self) -> None:
        return None


def fragment_to_row(fragment: Fragment) -> Dict[str, Any]:
    return {
        "session_id": fragment.session_id,
        "text": fragment.text,
        "speaker": fragment.speaker.value,
        "timestamp_offset": fragment.start_offset_ms,
        "confidence_score": fragment.confidence,
        "asr_provider": fragment.provider_id,
        "start_time_ms": fragment.start_offset_ms,
        "end_time_ms": fragment.end_offset_ms,
        "alternatives": [alt.model_dump() for alt in fragment.alternatives],
        "raw_metadata": {
            "local_id": fragment.id,
            "speaker_source": fragment.speaker_source.value,
            "is_final": fragment.is_final,
        },
    }


class InMemoryTranscriptStore(TranscriptStore):
    """Process-local store used in development and tests."""

    def __init__(self):
        self._rows: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def insert_batch(self, fragments: List[Fragment]) -> List[str]:
        async with self._lock:
            rows = []
            for fragment in fragments:
                row = fragment_to_row(fragment)
                row["id"] = str(uuid.uuid4())
                rows.append(row)
            for row in rows:
                self._rows.setdefault(row["session_id"], []).append(row)
            return [row["id"] for row in rows]

    async def list_session(self, session_id: str) -> List[Dict[str, Any]]:
        rows = list(self._rows.get(session_id, []))
        return sorted(rows, key=lambda row: row["timestamp_offset"] or 0)


class PostgrestTranscriptStore(TranscriptStore):
    """Writes to a PostgREST (e.g. Supabase) ``session_transcripts`` table."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "session_transcripts",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.table = table
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        message = f"PostgREST returned status {response.status_code}: {response.text[:200]}"
        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableTransportError(message, status_code=response.status_code, service="postgrest")
        raise NonRetryableError(message, status_code=response.status_code, service="postgrest")

    async def insert_batch(self, fragments: List[Fragment]) -> List[str]:
        response = await self._client.post(
            f"/rest/v1/{self.table}",
            json=[fragment_to_row(fragment) for fragment in fragments],
            headers={"Prefer": "return=representation"},
        )
        self._raise_for_status(response)
        data = response.json()
        logger.debug(f"Inserted {len(data)} transcript rows into {self.table}")
        return [str(row["id"]) for row in data]

    async def list_session(self, session_id: str) -> List[Dict[str, Any]]:
        response = await self._client.get(
            f"/rest/v1/{self.table}",
            params={"session_id": f"eq.{session_id}", "order": "timestamp_offset.asc"},
        )
        self._raise_for_status(response)
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()


def build_store(settings: Settings) -> TranscriptStore:
    if settings.storage_backend == StorageBackend.POSTGREST:
        if not settings.postgrest_url:
            raise ValueError("POSTGREST_URL must be set when storage_backend is 'postgrest'")
        return PostgrestTranscriptStore(
            settings.postgrest_url,
            settings.postgrest_api_key,
            table=settings.postgrest_table,
        )
    return InMemoryTranscriptStore()
