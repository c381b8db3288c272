"""Tests for the batched ingestion queue."""
import asyncio

import pytest

from scribeflow.core.circuit import CircuitBreakerRegistry, CircuitConfig
from scribeflow.core.retry import RetryExecutor, RetryPolicy
from scribeflow.models.transcript import BatchStatus, ConfidenceBucket, ConnectionHealth
from scribeflow.services.ingestion import IngestionConfig, IngestionQueue, classify_confidence
from scribeflow.services.metrics import PipelineMetrics

from fakes import FakeStore, make_fragment, no_sleep, wait_until


def make_queue(store, resilience, warnings=None, metrics=None, **config):
    defaults = {"batch_size": 5, "debounce_ms": 10_000}
    defaults.update(config)
    return IngestionQueue(
        "s1",
        store,
        resilience,
        config=IngestionConfig(**defaults),
        on_warning=warnings.append if warnings is not None else None,
        metrics=metrics,
    )


@pytest.mark.asyncio
async def test_full_batch_flushes_before_timer(store, resilience):
    queue = make_queue(store, resilience)
    fragments = [make_fragment(f"fragment {i}") for i in range(5)]

    for fragment in fragments:
        await queue.enqueue(fragment)
    await queue.wait_for_flushes()

    assert store.batches == [[f"fragment {i}" for i in range(5)]]
    assert all(not fragment.pending for fragment in fragments)
    assert [fragment.id for fragment in fragments] == [f"row-{i}" for i in range(5)]
    await queue.close()


@pytest.mark.asyncio
async def test_timer_expiry_flushes_partial_batch(store, resilience):
    queue = make_queue(store, resilience, debounce_ms=20)

    await queue.enqueue(make_fragment("one"))
    await queue.enqueue(make_fragment("two"))
    assert store.batches == []

    await wait_until(lambda: store.batches)
    assert store.batches == [["one", "two"]]
    await queue.close()


@pytest.mark.asyncio
async def test_sixth_fragment_starts_fresh_debounce_window(store, resilience):
    queue = make_queue(store, resilience, debounce_ms=50)

    for i in range(6):
        await queue.enqueue(make_fragment(f"f{i}"))
    await queue.wait_for_flushes()

    assert store.batches == [["f0", "f1", "f2", "f3", "f4"]]
    assert [fragment.text for fragment in queue.pending] == ["f5"]

    await wait_until(lambda: len(store.batches) == 2)
    assert store.batches[1] == ["f5"]
    await queue.close()


@pytest.mark.asyncio
async def test_interim_fragments_are_rejected(store, resilience):
    queue = make_queue(store, resilience)

    with pytest.raises(ValueError):
        await queue.enqueue(make_fragment("partial wor", is_final=False))

    assert queue.stats().total_chunks == 0


@pytest.mark.asyncio
async def test_only_one_flush_in_flight(resilience):
    store = FakeStore(delay=0.01)
    queue = make_queue(store, resilience)

    for i in range(15):
        await queue.enqueue(make_fragment(f"f{i}"))
    await queue.drain()

    assert store.max_active == 1
    assert [text for batch in store.batches for text in batch] == [f"f{i}" for i in range(15)]
    assert all(len(batch) <= 5 for batch in store.batches)


@pytest.mark.asyncio
async def test_transient_failure_is_retried_without_duplicates(resilience):
    store = FakeStore(failures=1)
    queue = make_queue(store, resilience)
    fragments = [make_fragment(f"f{i}") for i in range(5)]

    for fragment in fragments:
        await queue.enqueue(fragment)
    await queue.wait_for_flushes()

    stats = queue.stats()
    assert stats.saved_chunks == 5
    assert stats.failed_chunks == 0
    assert len(store.rows) == 5
    assert all(not fragment.pending for fragment in fragments)
    await queue.close()


@pytest.mark.asyncio
async def test_partial_write_counts_as_failed_attempt(resilience):
    store = FakeStore(partial=1)
    queue = make_queue(store, resilience)

    for i in range(5):
        await queue.enqueue(make_fragment(f"f{i}"))
    await queue.wait_for_flushes()

    assert store.calls == 2
    assert queue.stats().saved_chunks == 5
    await queue.close()


@pytest.mark.asyncio
async def test_exhausted_batch_is_kept_and_resynced_before_next_batch(resilience):
    store = FakeStore(failures=-1)
    warnings = []
    queue = make_queue(store, resilience, warnings=warnings)
    first = [make_fragment(f"a{i}") for i in range(5)]

    for fragment in first:
        await queue.enqueue(fragment)
    await queue.wait_for_flushes()

    stats = queue.stats()
    assert stats.failed_chunks == 5
    assert stats.saved_chunks == 0
    assert stats.connection_health == ConnectionHealth.DEGRADED
    assert len(warnings) == 1
    assert warnings[0].fragment_count == 5
    assert queue.failed_batches[0].status == BatchStatus.FAILED
    assert all(fragment.pending for fragment in first)

    store.failures = 0
    for i in range(5):
        await queue.enqueue(make_fragment(f"b{i}"))
    await queue.wait_for_flushes()

    stats = queue.stats()
    assert stats.saved_chunks == 10
    assert stats.failed_chunks == 0
    assert stats.connection_health == ConnectionHealth.HEALTHY
    assert store.batches == [[f"a{i}" for i in range(5)], [f"b{i}" for i in range(5)]]
    assert all(not fragment.pending for fragment in first)
    assert queue.failed_batches == []
    assert len(warnings) == 1
    await queue.close()


@pytest.mark.asyncio
async def test_manual_retry_of_failed_batches(resilience):
    store = FakeStore(failures=-1)
    queue = make_queue(store, resilience, auto_resync=False)

    for i in range(3):
        await queue.enqueue(make_fragment(f"f{i}"))
    await queue.drain()
    assert queue.stats().failed_chunks == 3

    store.failures = 0
    resynced = await queue.retry_failed()

    assert resynced == 3
    assert queue.stats().saved_chunks == 3
    assert queue.stats().failed_chunks == 0
    assert await queue.retry_failed() == 0


@pytest.mark.asyncio
async def test_open_circuit_reports_offline():
    registry = CircuitBreakerRegistry(
        retry=RetryExecutor(RetryPolicy(max_retries=0), sleep=no_sleep),
        config=CircuitConfig(failure_threshold=1, reset_timeout_ms=60_000),
    )
    store = FakeStore(failures=-1)
    queue = make_queue(store, registry, batch_size=2)

    for i in range(4):
        await queue.enqueue(make_fragment(f"f{i}"))
    await queue.drain()

    assert store.calls == 1
    assert queue.stats().failed_chunks == 4
    assert queue.stats().connection_health == ConnectionHealth.OFFLINE


@pytest.mark.asyncio
async def test_drain_writes_everything_pending(store, resilience):
    queue = make_queue(store, resilience)

    await queue.enqueue(make_fragment("only one"))
    stats = await queue.drain()

    assert store.batches == [["only one"]]
    assert stats.pending_chunks == 0
    assert stats.saved_chunks == 1


@pytest.mark.asyncio
async def test_stats_track_confidence_histogram_and_metrics(store, resilience):
    metrics = PipelineMetrics()
    queue = make_queue(store, resilience, metrics=metrics)

    for confidence in (0.5, 0.7, 0.9):
        await queue.enqueue(make_fragment("text", confidence=confidence))
    stats = await queue.drain()

    assert stats.confidence_histogram == {
        ConfidenceBucket.LOW: 1,
        ConfidenceBucket.MEDIUM: 1,
        ConfidenceBucket.HIGH: 1,
    }
    assert stats.average_confidence == 0.7
    assert stats.total_chunks == 3
    assert metrics.registry.get_sample_value("transcript_batches_total", {"status": "saved"}) == 1.0


@pytest.mark.parametrize(
    "confidence,bucket",
    [(0.0, ConfidenceBucket.LOW), (0.59, ConfidenceBucket.LOW), (0.6, ConfidenceBucket.MEDIUM),
     (0.79, ConfidenceBucket.MEDIUM), (0.8, ConfidenceBucket.HIGH), (1.0, ConfidenceBucket.HIGH)],
)
def test_classify_confidence(confidence, bucket):
    assert classify_confidence(confidence) == bucket


@pytest.mark.asyncio
async def test_enqueue_never_waits_for_the_write(resilience):
    store = FakeStore(delay=0.05)
    queue = make_queue(store, resilience, batch_size=1)

    await asyncio.wait_for(queue.enqueue(make_fragment("fast")), timeout=0.01)

    assert queue.stats().total_chunks == 1
    await queue.drain()
    assert queue.stats().saved_chunks == 1


@pytest.mark.asyncio
async def test_newer_batch_waits_behind_unresolved_failures():
    registry = CircuitBreakerRegistry(
        retry=RetryExecutor(RetryPolicy(max_retries=0), sleep=no_sleep),
        config=CircuitConfig(failure_threshold=10),
    )
    store = FakeStore(failures=2)
    queue = make_queue(store, registry, batch_size=2)

    for i in range(4):
        await queue.enqueue(make_fragment(f"f{i}"))
    await queue.wait_for_flushes()

    assert store.calls == 2
    assert [batch.status for batch in queue.failed_batches] == [BatchStatus.FAILED, BatchStatus.FAILED]
    assert queue.stats().failed_chunks == 4

    await queue.retry_failed()

    assert store.batches == [["f0", "f1"], ["f2", "f3"]]
    assert queue.stats().failed_chunks == 0


@pytest.mark.asyncio
async def test_close_writes_buffered_fragments(store, resilience):
    queue = make_queue(store, resilience, debounce_ms=3000)

    for i in range(3):
        await queue.enqueue(make_fragment(f"f{i}"))
    await queue.close()

    stats = queue.stats()
    assert stats.saved_chunks == 3
    assert stats.pending_chunks == 0
    assert store.batches == [["f0", "f1", "f2"]]


@pytest.mark.asyncio
async def test_cancelled_write_keeps_batch_for_resync(resilience):
    store = FakeStore(delay=1.0)
    queue = make_queue(store, resilience)

    for i in range(3):
        await queue.enqueue(make_fragment(f"f{i}"))
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(queue.flush(force=True), timeout=0.05)

    stats = queue.stats()
    assert stats.failed_chunks == 3
    assert stats.pending_chunks == 0
    assert queue.failed_batches[0].status == BatchStatus.FAILED

    store.delay = 0.0
    assert await queue.retry_failed() == 3
    assert store.batches == [["f0", "f1", "f2"]]
    await queue.close()
