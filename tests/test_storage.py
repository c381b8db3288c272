"""Tests for the transcript stores."""
import json

import httpx
import pytest

from scribeflow.config import Settings, StorageBackend
from scribeflow.core.errors import NonRetryableError, RetryableTransportError
from scribeflow.models.transcript import Speaker
from scribeflow.services.storage import (
    InMemoryTranscriptStore,
    PostgrestTranscriptStore,
    build_store,
    fragment_to_row,
)

from fakes import make_fragment


def postgrest(handler):
    client = httpx.AsyncClient(base_url="http://postgrest.test", transport=httpx.MockTransport(handler))
    return PostgrestTranscriptStore("http://postgrest.test", "anon-key", client=client)


def test_fragment_row_layout():
    fragment = make_fragment("Any fever?", confidence=0.82, offset=1500, speaker=Speaker.SECONDARY, provider_id="browser")

    row = fragment_to_row(fragment)

    assert row["session_id"] == "s1"
    assert row["speaker"] == "secondary"
    assert row["timestamp_offset"] == 1500
    assert row["confidence_score"] == 0.82
    assert row["asr_provider"] == "browser"
    assert row["raw_metadata"]["local_id"] == fragment.id


@pytest.mark.asyncio
async def test_in_memory_store_returns_one_id_per_fragment():
    store = InMemoryTranscriptStore()

    ids = await store.insert_batch([make_fragment("late", offset=900), make_fragment("early", offset=100)])
    rows = await store.list_session("s1")

    assert len(set(ids)) == 2
    assert [row["text"] for row in rows] == ["early", "late"]


@pytest.mark.asyncio
async def test_postgrest_insert_returns_row_ids():
    seen = {}

    def handler(request):
        seen["prefer"] = request.headers["Prefer"]
        seen["path"] = request.url.path
        rows = json.loads(request.content)
        return httpx.Response(201, json=[{**row, "id": f"uuid-{i}"} for i, row in enumerate(rows)])

    store = postgrest(handler)
    ids = await store.insert_batch([make_fragment("one"), make_fragment("two")])

    assert ids == ["uuid-0", "uuid-1"]
    assert seen == {"prefer": "return=representation", "path": "/rest/v1/session_transcripts"}
    await store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code,error", [(503, RetryableTransportError), (429, RetryableTransportError), (409, NonRetryableError)])
async def test_postgrest_errors_are_classified(status_code, error):
    store = postgrest(lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(error) as exc_info:
        await store.insert_batch([make_fragment("one")])

    assert exc_info.value.status_code == status_code
    await store.close()


def test_build_store_requires_postgrest_url():
    settings = Settings(api_secret_key="test", storage_backend=StorageBackend.POSTGREST, postgrest_url="")

    with pytest.raises(ValueError):
        build_store(settings)
    assert isinstance(build_store(Settings(api_secret_key="test")), InMemoryTranscriptStore)
