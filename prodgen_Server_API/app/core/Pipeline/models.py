from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from prodgen_Server_API.app.core.Pipeline.exceptions import UnknownStageError
from prodgen_Server_API.app.core.Utils.time_utils import isoformat_or_none


class JobStage(str, Enum):
    """Pipeline stages in execution order (collect, analyze, synthesize, publish)."""
    SCRAPE = "scrape"
    ANALYZE = "analyze"
    GENERATE = "generate"
    LIST = "list"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


PIPELINE_ORDER = (JobStage.SCRAPE, JobStage.ANALYZE, JobStage.GENERATE, JobStage.LIST)

_NEXT_STAGE: Dict[JobStage, Optional[JobStage]] = {
    JobStage.SCRAPE: JobStage.ANALYZE,
    JobStage.ANALYZE: JobStage.GENERATE,
    JobStage.GENERATE: JobStage.LIST,
    JobStage.LIST: None,
}

# RUNNING -> RUNNING covers redelivery of a message whose lock was lost
ALLOWED_TRANSITIONS: Mapping[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.RUNNING, JobStatus.SUCCESS, JobStatus.RETRYING, JobStatus.FAILED}),
    JobStatus.RETRYING: frozenset({JobStatus.RUNNING}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILED})


def parse_stage(value: Any) -> JobStage:
    """Coerce a stage name (or JobStage) into a JobStage, raising UnknownStageError."""
    if isinstance(value, JobStage):
        return value
    try:
        return JobStage(str(value).strip().lower())
    except ValueError:
        raise UnknownStageError(value) from None


def next_stage(stage: JobStage | str) -> Optional[JobStage]:
    return _NEXT_STAGE[parse_stage(stage)]


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def queue_name_for(stage: JobStage | str) -> str:
    return parse_stage(stage).value


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    id: str
    job_key: str
    stage: JobStage
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    parent_job_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def copy(self, **changes: Any) -> "Job":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_key": self.job_key,
            "stage": self.stage.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "started_at": isoformat_or_none(self.started_at),
            "completed_at": isoformat_or_none(self.completed_at),
            "duration_ms": self.duration_ms,
            "metadata": dict(self.metadata),
            "parent_job_id": self.parent_job_id,
            "created_at": isoformat_or_none(self.created_at),
            "updated_at": isoformat_or_none(self.updated_at),
        }
