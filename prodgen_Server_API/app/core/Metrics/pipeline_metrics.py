from __future__ import annotations

import os
from typing import Optional

from loguru import logger
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


def _parse_buckets(env_key: str, default: list[float]) -> list[float]:
    try:
        raw = os.getenv(env_key, "")
        if not raw:
            return default
        vals = []
        for part in raw.split(","):
            s = part.strip()
            if not s:
                continue
            vals.append(float(s))
        return vals or default
    except Exception:
        return default


DEFAULT_DURATION_BUCKETS_MS = [100, 500, 1000, 5000, 15000, 60000, 300000]

# Gauge values for pipeline_circuit_state
CIRCUIT_STATE_VALUES = {"closed": 0, "open": 1, "half-open": 2}


class PipelineMetrics:
    """Prometheus instruments for stage execution, breaker and dead-letter activity.

    Each instance owns its registry so tests and multiple apps do not collide
    on the process-global default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        buckets = _parse_buckets("PIPELINE_DURATION_BUCKETS_MS", DEFAULT_DURATION_BUCKETS_MS)
        self.job_duration_ms = Histogram(
            "pipeline_job_duration_ms",
            "Stage execution duration in milliseconds",
            ["stage", "status"],
            buckets=buckets,
            registry=self.registry,
        )
        self.job_failures = Counter(
            "pipeline_job_failures_total",
            "Failed stage executions",
            ["stage"],
            registry=self.registry,
        )
        self.job_successes = Counter(
            "pipeline_job_success_total",
            "Successful stage executions",
            ["stage"],
            registry=self.registry,
        )
        self.active_jobs = Gauge(
            "pipeline_active_jobs",
            "Stage executions currently in flight",
            ["stage"],
            registry=self.registry,
        )
        self.dead_letters = Counter(
            "pipeline_dead_letters_total",
            "Dead-letter entries written",
            ["queue"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "pipeline_circuit_state",
            "Circuit breaker state per queue (0 closed, 1 open, 2 half-open)",
            ["queue"],
            registry=self.registry,
        )
        self.circuit_rejections = Counter(
            "pipeline_circuit_rejections_total",
            "Executions rejected by an open circuit",
            ["queue"],
            registry=self.registry,
        )

    def observe_duration(self, stage: str, status: str, duration_ms: float) -> None:
        self.job_duration_ms.labels(stage=stage, status=status).observe(max(float(duration_ms), 0.0))

    def record_failure(self, stage: str) -> None:
        self.job_failures.labels(stage=stage).inc()

    def record_success(self, stage: str) -> None:
        self.job_successes.labels(stage=stage).inc()

    def job_started(self, stage: str) -> None:
        self.active_jobs.labels(stage=stage).inc()

    def job_finished(self, stage: str) -> None:
        self.active_jobs.labels(stage=stage).dec()

    def record_dead_letter(self, queue: str) -> None:
        self.dead_letters.labels(queue=queue).inc()

    def set_circuit_state(self, queue: str, state: str) -> None:
        value = CIRCUIT_STATE_VALUES.get(state)
        if value is None:
            logger.debug(f"Unknown circuit state {state!r} for queue {queue}")
            return
        self.circuit_state.labels(queue=queue).set(value)

    def record_rejection(self, queue: str) -> None:
        self.circuit_rejections.labels(queue=queue).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


_metrics: Optional[PipelineMetrics] = None


def get_pipeline_metrics() -> PipelineMetrics:
    global _metrics
    if _metrics is None:
        _metrics = PipelineMetrics()
    return _metrics


def reset_pipeline_metrics() -> None:
    global _metrics
    _metrics = None
