"""
Process-wide Prometheus counters.

Built on an explicit ``CollectorRegistry`` so every app instance (and every
test) gets its own set of counters.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


class PipelineMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            "http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"],
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "http_request_duration_seconds", "HTTP request duration",
            registry=self.registry,
        )
        self.fragments_ingested = Counter(
            "transcript_fragments_ingested_total", "Finalized fragments accepted for persistence", ["provider"],
            registry=self.registry,
        )
        self.batches_written = Counter(
            "transcript_batches_total", "Transcript batch writes by outcome", ["status"],
            registry=self.registry,
        )
        self.batch_write_duration = Histogram(
            "transcript_batch_write_seconds", "Duration of transcript batch writes including retries",
            registry=self.registry,
        )
        self.workflow_steps = Counter(
            "workflow_steps_total", "Workflow step outcomes", ["step", "status"],
            registry=self.registry,
        )
        self.provider_restarts = Counter(
            "provider_restarts_total", "Automatic provider restarts", ["provider"],
            registry=self.registry,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)
