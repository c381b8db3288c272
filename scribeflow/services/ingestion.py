"""
Batched, debounced persistence of finalized transcript fragments.

Fragments are buffered per session and written in batches of at most
``batch_size`` either as soon as a batch is full or when the debounce window
expires. Only one flush runs at a time; write failures never reach the
producer, they are kept for a later resync and reported as sync warnings.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Set

from scribeflow.config import Settings
from scribeflow.core.circuit import CircuitBreakerRegistry
from scribeflow.core.errors import CircuitOpenError, RetryableTransportError
from scribeflow.core.logging import get_logger, audit_logger
from scribeflow.core.retry import RetryState
from scribeflow.models.transcript import (
    Batch,
    BatchStatus,
    ConfidenceBucket,
    ConnectionHealth,
    Fragment,
    IngestionStats,
    SyncWarning,
)
from scribeflow.services.metrics import PipelineMetrics
from scribeflow.services.storage import TranscriptStore

logger = get_logger(__name__)

STORAGE_OPERATION = "storage:insert"
ROLLING_WINDOW = 100
OFFLINE_MESSAGE = (
    "Failed to save transcripts after multiple attempts. Your transcript is cached "
    "locally and will be saved when the connection is restored."
)


def classify_confidence(confidence: float, low: float = 0.6, high: float = 0.8) -> ConfidenceBucket:
    if confidence >= high:
        return ConfidenceBucket.HIGH
    if confidence >= low:
        return ConfidenceBucket.MEDIUM
    return ConfidenceBucket.LOW


@dataclass
class IngestionConfig:
    batch_size: int = 5
    debounce_ms: int = 3000
    auto_resync: bool = True
    confidence_threshold_low: float = 0.6
    confidence_threshold_high: float = 0.8

    @classmethod
    def from_settings(cls, settings: Settings) -> "IngestionConfig":
        return cls(
            batch_size=settings.batch_size,
            debounce_ms=settings.debounce_ms,
            auto_resync=settings.auto_resync,
            confidence_threshold_low=settings.confidence_threshold_low,
            confidence_threshold_high=settings.confidence_threshold_high,
        )


class IngestionQueue:
    def __init__(
        self,
        session_id: str,
        store: TranscriptStore,
        resilience: CircuitBreakerRegistry,
        config: Optional[IngestionConfig] = None,
        on_warning: Optional[Callable[[SyncWarning], None]] = None,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self.session_id = session_id
        self.store = store
        self.resilience = resilience
        self.config = config or IngestionConfig()
        self._on_warning = on_warning
        self._metrics = metrics

        self._pending: List[Fragment] = []
        self._failed: List[Batch] = []
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._total = 0
        self._saved = 0
        self._failed_count = 0
        self._in_flight = 0
        self._latencies: Deque[int] = deque(maxlen=ROLLING_WINDOW)
        self._confidences: Deque[float] = deque(maxlen=ROLLING_WINDOW)
        self._histogram: Dict[ConfidenceBucket, int] = {bucket: 0 for bucket in ConfidenceBucket}
        self._health = ConnectionHealth.HEALTHY

    @property
    def pending(self) -> List[Fragment]:
        return list(self._pending)

    @property
    def failed_batches(self) -> List[Batch]:
        return list(self._failed)

    @property
    def flushing(self) -> bool:
        return self._lock.locked()

    async def enqueue(self, fragment: Fragment) -> None:
        if not fragment.is_final:
            raise ValueError("Interim fragments are never persisted")

        fragment.pending = True
        self._pending.append(fragment)
        self._total += 1
        if self._metrics:
            self._metrics.fragments_ingested.labels(provider=fragment.provider_id).inc()
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if len(self._pending) >= self.config.batch_size:
            self._cancel_timer()
            self._spawn(self.flush())
        else:
            self._restart_timer()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def _restart_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._debounce())

    async def _debounce(self) -> None:
        await asyncio.sleep(self.config.debounce_ms / 1000.0)
        # Detach before flushing so a new enqueue cannot cancel the write
        self._timer = None
        await self.flush(force=True)

    async def flush(self, force: bool = False) -> None:
        """
        Writes full batches, or everything pending when ``force`` is set.
        Concurrent callers wait for the flush in progress.
        """
        async with self._lock:
            while self._pending and (force or len(self._pending) >= self.config.batch_size):
                batch = Batch(
                    session_id=self.session_id,
                    fragments=self._pending[: self.config.batch_size],
                )
                del self._pending[: len(batch.fragments)]

                if self._failed and self.config.auto_resync:
                    # Queue behind the cached batches so rows keep enqueue order
                    self._hold(batch)
                    await self._resync_locked()
                else:
                    await self._write_batch(batch)

            if self._pending and self._timer is None:
                self._restart_timer()

    async def _insert(self, batch: Batch) -> List[str]:
        ids = await self.store.insert_batch(batch.fragments)
        if len(ids) != len(batch.fragments):
            raise RetryableTransportError(
                f"partial write: {len(ids)} of {len(batch.fragments)} fragments acknowledged",
                service="storage",
            )
        return ids

    async def _write_batch(self, batch: Batch) -> bool:
        was_failed = batch.status == BatchStatus.FAILED
        batch.status = BatchStatus.WRITING
        size = len(batch.fragments)
        state = RetryState()
        started = time.monotonic()
        self._in_flight += size

        try:
            ids = await self.resilience.call(
                STORAGE_OPERATION,
                lambda: self._insert(batch),
                context=f"{STORAGE_OPERATION}:{self.session_id}",
                state=state,
            )
        except asyncio.CancelledError as e:
            batch.attempts += state.attempt
            self._mark_failed(batch, e, was_failed)
            raise
        except Exception as e:
            batch.attempts += state.attempt
            self._mark_failed(batch, e, was_failed)
            return False
        finally:
            self._in_flight -= size

        latency_ms = int((time.monotonic() - started) * 1000)
        batch.attempts += state.attempt
        batch.status = BatchStatus.SAVED
        batch.error = None

        for fragment, fragment_id in zip(batch.fragments, ids):
            fragment.id = fragment_id
            fragment.pending = False
            bucket = classify_confidence(
                fragment.confidence,
                self.config.confidence_threshold_low,
                self.config.confidence_threshold_high,
            )
            self._histogram[bucket] += 1
            self._confidences.append(fragment.confidence)

        self._saved += size
        if was_failed:
            self._failed_count -= size
            self._failed.remove(batch)
        self._latencies.append(latency_ms)
        self._health = ConnectionHealth.HEALTHY

        logger.info(f"Saved batch of {size} transcript fragments for session {self.session_id} ({latency_ms}ms)")
        audit_logger.log_batch_write(
            session_id=self.session_id,
            batch_id=batch.id,
            fragment_count=size,
            status=batch.status.value,
            latency_ms=latency_ms,
            attempts=batch.attempts,
        )
        if self._metrics:
            self._metrics.batches_written.labels(status="saved").inc()
            self._metrics.batch_write_duration.observe(latency_ms / 1000.0)
        return True

    def _hold(self, batch: Batch) -> None:
        batch.status = BatchStatus.FAILED
        batch.error = "waiting for earlier batches"
        self._failed.append(batch)
        self._failed_count += len(batch.fragments)

    def _mark_failed(self, batch: Batch, error: BaseException, was_failed: bool) -> None:
        batch.status = BatchStatus.FAILED
        batch.error = str(error) or type(error).__name__
        if not was_failed:
            self._failed.append(batch)
            self._failed_count += len(batch.fragments)
        self._health = (
            ConnectionHealth.OFFLINE if isinstance(error, CircuitOpenError) else ConnectionHealth.DEGRADED
        )

        logger.error(
            f"Failed to save batch {batch.id} for session {self.session_id}: {error}",
            fragment_count=len(batch.fragments),
            attempts=batch.attempts,
        )
        audit_logger.log_batch_write(
            session_id=self.session_id,
            batch_id=batch.id,
            fragment_count=len(batch.fragments),
            status=batch.status.value,
            latency_ms=0,
            attempts=batch.attempts,
            error=str(error),
        )
        if self._metrics:
            self._metrics.batches_written.labels(status="failed").inc()

        if not was_failed and self._on_warning is not None:
            self._on_warning(
                SyncWarning(
                    session_id=self.session_id,
                    batch_id=batch.id,
                    fragment_count=len(batch.fragments),
                    message=OFFLINE_MESSAGE,
                    error=str(error),
                )
            )

    async def _resync_locked(self) -> int:
        resynced = 0
        for batch in list(self._failed):
            if not await self._write_batch(batch):
                # Keep the remaining batches in order for the next attempt
                break
            resynced += len(batch.fragments)
        if resynced:
            logger.info(f"Resynced {resynced} cached fragments for session {self.session_id}")
        return resynced

    async def retry_failed(self) -> int:
        """Re-attempts batches that failed earlier; returns the number of fragments saved."""
        async with self._lock:
            return await self._resync_locked()

    async def wait_for_flushes(self) -> None:
        tasks = [task for task in self._tasks if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def drain(self) -> IngestionStats:
        """Writes everything still pending. Called when a recording stops."""
        self._cancel_timer()
        await self.wait_for_flushes()
        await self.flush(force=True)
        return self.stats()

    async def close(self) -> None:
        """Writes what is still buffered, then stops the background tasks."""
        await self.drain()
        self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()
        await self.wait_for_flushes()

    def stats(self) -> IngestionStats:
        average_latency = sum(self._latencies) / len(self._latencies) if self._latencies else 0
        average_confidence = sum(self._confidences) / len(self._confidences) if self._confidences else 0.0
        return IngestionStats(
            total_chunks=self._total,
            saved_chunks=self._saved,
            pending_chunks=len(self._pending) + self._in_flight,
            failed_chunks=self._failed_count,
            average_latency_ms=int(round(average_latency)),
            average_confidence=round(average_confidence, 2),
            confidence_histogram=dict(self._histogram),
            connection_health=self._health,
        )
