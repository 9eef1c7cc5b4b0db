"""Metrics utilities for the KYC processing backbone."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import PlainTextResponse

from .interfaces import MetricsClient

LOG = logging.getLogger(__name__)

# Counter names emitted by the worker, reaper, escalation and review layers.
JOBS_COMPLETED = "jobs_completed_total"
JOBS_FAILED = "jobs_failed_total"
JOBS_REQUEUED = "jobs_requeued_total"
JOBS_CPU_FALLBACK = "jobs_cpu_fallback_total"
LOCK_CONTENTION = "lock_contention_total"
JOBS_REAPED = "jobs_reaped_total"
ESCALATIONS_QUEUED = "escalations_queued_total"
REVIEW_WORKFLOWS = "review_workflows_total"
PROCESSING_LATENCY = "processing_latency_seconds"


class PrometheusMetrics(MetricsClient):
    """Prometheus-backed metrics client."""

    _LATENCY = Histogram(
        "kyc_backbone_latency_seconds",
        "Stage latency in seconds",
        ["stage", "name"],
        # OCR on CPU can take minutes per page
        buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
    )
    _COUNTERS = Counter(
        "kyc_backbone_events_total",
        "Backbone event counts",
        ["stage", "name"],
    )
    _DEFAULT_INSTANCE: ClassVar["PrometheusMetrics | None"] = None

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        stage = labels.get("stage", "unknown")
        PrometheusMetrics._LATENCY.labels(stage=stage, name=name).observe(value)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        stage = labels.get("stage", "unknown")
        PrometheusMetrics._COUNTERS.labels(stage=stage, name=name).inc(amount)

    @classmethod
    def default(cls) -> "PrometheusMetrics":
        if cls._DEFAULT_INSTANCE is None:
            cls._DEFAULT_INSTANCE = cls()
        return cls._DEFAULT_INSTANCE

    @classmethod
    def instrument_app(cls, app: Any) -> "PrometheusMetrics":
        """Attach the /metrics endpoint to the FastAPI/Starlette app."""
        metrics = cls.default()
        if getattr(app.state, "_prometheus_instrumented", False):
            return metrics

        @app.get("/metrics", include_in_schema=False)
        async def _metrics_endpoint():
            data = generate_latest()
            return PlainTextResponse(
                data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST
            )

        app.state._prometheus_instrumented = True
        app.state.metrics = metrics
        return metrics


class NullMetrics(MetricsClient):
    """No-op metrics implementation."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Metric ignored: %s=%s labels=%s", name, value, labels)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        LOG.debug("Counter ignored: %s+=%s labels=%s", name, amount, labels)


class RecordingMetrics(MetricsClient):
    """In-process counter totals; used by the ops status view and tests."""

    def __init__(self) -> None:
        self.counters: dict[tuple[str, str], int] = {}
        self.latencies: dict[tuple[str, str], list[float]] = {}

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        key = (labels.get("stage", "unknown"), name)
        self.latencies.setdefault(key, []).append(value)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        key = (labels.get("stage", "unknown"), name)
        self.counters[key] = self.counters.get(key, 0) + amount

    def count(self, name: str, stage: str | None = None) -> int:
        return sum(
            value
            for (key_stage, key_name), value in self.counters.items()
            if key_name == name and (stage is None or key_stage == stage)
        )


__all__ = [
    "ESCALATIONS_QUEUED",
    "JOBS_COMPLETED",
    "JOBS_CPU_FALLBACK",
    "JOBS_FAILED",
    "JOBS_REAPED",
    "JOBS_REQUEUED",
    "LOCK_CONTENTION",
    "NullMetrics",
    "PROCESSING_LATENCY",
    "PrometheusMetrics",
    "REVIEW_WORKFLOWS",
    "RecordingMetrics",
]
