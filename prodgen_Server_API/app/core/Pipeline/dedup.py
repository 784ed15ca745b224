"""
Job key strategies used by the orchestrator to collapse duplicate triggers.

The fixed-window strategy buckets automatic runs by ``floor(now_ms / window_ms)``.
Window edges are absolute, so two triggers two minutes apart can land in
different windows when a boundary falls between them (05:59 vs 06:01 with a
6h window).
"""

from __future__ import annotations

import uuid
from typing import Optional, Protocol

from prodgen_Server_API.app.core.config import SIX_HOURS_MS
from prodgen_Server_API.app.core.Pipeline.models import JobStage


class DedupKeyStrategy(Protocol):
    def job_key(
        self,
        stage: JobStage,
        *,
        manual: bool,
        now_ms: int,
        idempotency_key: Optional[str] = None,
    ) -> str: ...


def manual_job_key(stage: JobStage, now_ms: int) -> str:
    # Suffix keeps two manual runs in the same millisecond distinct
    return f"{stage.value}:manual:{now_ms}:{uuid.uuid4().hex[:8]}"


class FixedWindowDedup:
    def __init__(self, window_ms: int = SIX_HOURS_MS):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.window_ms = int(window_ms)

    def window_index(self, now_ms: int) -> int:
        return now_ms // self.window_ms

    def job_key(self, stage: JobStage, *, manual: bool, now_ms: int, idempotency_key: Optional[str] = None) -> str:
        if manual:
            return manual_job_key(stage, now_ms)
        return f"{stage.value}:auto:{self.window_index(now_ms)}"


class ExternalKeyDedup:
    """Caller-supplied idempotency keys; falls back to another strategy when absent."""

    def __init__(self, fallback: Optional[DedupKeyStrategy] = None):
        self.fallback = fallback or FixedWindowDedup()

    def job_key(self, stage: JobStage, *, manual: bool, now_ms: int, idempotency_key: Optional[str] = None) -> str:
        if idempotency_key:
            return f"{stage.value}:key:{idempotency_key}"
        return self.fallback.job_key(stage, manual=manual, now_ms=now_ms)


def build_dedup_strategy(name: str, window_ms: int = SIX_HOURS_MS) -> DedupKeyStrategy:
    if name == "fixed_window":
        return FixedWindowDedup(window_ms)
    if name == "external_key":
        return ExternalKeyDedup(FixedWindowDedup(window_ms))
    raise ValueError(f"Unknown dedup strategy: {name}")
