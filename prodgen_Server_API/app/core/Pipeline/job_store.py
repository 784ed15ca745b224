"""
Job record stores.

`JobStore` is the persistence contract the orchestrator and status utilities
depend on. Two implementations ship with the service:

- `InMemoryJobStore`: process-local, used in single-instance mode and tests.
- `SQLiteJobStore`: file-backed, job_key uniqueness enforced by the schema.

Both raise `DuplicateJobKeyError` on a job_key collision and
`JobNotFoundError` when updating an unknown id.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from loguru import logger

from prodgen_Server_API.app.core.DB_Management.sqlite_db import SQLiteDatabase
from prodgen_Server_API.app.core.Pipeline.exceptions import DuplicateJobKeyError, JobNotFoundError
from prodgen_Server_API.app.core.Pipeline.models import Job, JobStage, JobStatus
from prodgen_Server_API.app.core.Utils.time_utils import Clock, ms_to_datetime, now_ms


_UPDATABLE_FIELDS = frozenset({
    "status",
    "attempts",
    "result",
    "error",
    "started_at",
    "completed_at",
    "duration_ms",
    "metadata",
})


def _check_fields(changes: Mapping[str, Any]) -> None:
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")


class JobStore(Protocol):
    async def create(self, job: Job) -> Job: ...

    async def find_by_id(self, job_id: str) -> Optional[Job]: ...

    async def find_by_key(self, job_key: str) -> Optional[Job]: ...

    async def update(self, job_id: str, changes: Mapping[str, Any]) -> Job: ...

    async def list_jobs(
        self,
        *,
        stage: Optional[JobStage] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
    ) -> List[Job]: ...

    async def ping(self) -> bool: ...


class InMemoryJobStore:
    def __init__(self, clock: Clock = now_ms):
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._by_key: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _now(self) -> datetime:
        return ms_to_datetime(self._clock())

    async def create(self, job: Job) -> Job:
        async with self._lock:
            if job.job_key in self._by_key:
                raise DuplicateJobKeyError(job.job_key)
            now = self._now()
            stored = job.copy(created_at=job.created_at or now, updated_at=now, metadata=dict(job.metadata))
            self._jobs[stored.id] = stored
            self._by_key[stored.job_key] = stored.id
            return stored.copy()

    async def find_by_id(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.copy() if job else None

    async def find_by_key(self, job_key: str) -> Optional[Job]:
        job_id = self._by_key.get(job_key)
        return await self.find_by_id(job_id) if job_id else None

    async def update(self, job_id: str, changes: Mapping[str, Any]) -> Job:
        _check_fields(changes)
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            updated = job.copy(**dict(changes), updated_at=self._now())
            self._jobs[job_id] = updated
            return updated.copy()

    async def list_jobs(self, *, stage=None, status=None, limit: int = 50) -> List[Job]:
        jobs = [
            j for j in self._jobs.values()
            if (stage is None or j.stage == stage) and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at or datetime.min, reverse=True)
        return [j.copy() for j in jobs[: max(0, limit)]]

    async def ping(self) -> bool:
        return True


JOBS_SCHEMA = """
CREATE TABLE IF NOT EXISTS pipeline_jobs (
    id TEXT PRIMARY KEY,
    job_key TEXT NOT NULL UNIQUE,
    stage TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    result_json TEXT,
    error_json TEXT,
    started_at TEXT,
    completed_at TEXT,
    duration_ms INTEGER,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    parent_job_id TEXT REFERENCES pipeline_jobs(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_stage_status ON pipeline_jobs(stage, status);
CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_parent ON pipeline_jobs(parent_job_id);
"""

_COLUMN_FOR_FIELD = {
    "status": "status",
    "attempts": "attempts",
    "result": "result_json",
    "error": "error_json",
    "started_at": "started_at",
    "completed_at": "completed_at",
    "duration_ms": "duration_ms",
    "metadata": "metadata_json",
}


def _encode(field_name: str, value: Any) -> Any:
    if field_name in ("result", "error", "metadata"):
        return None if value is None else json.dumps(value, default=str)
    if field_name == "status":
        return JobStatus(value).value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _decode_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        job_key=row["job_key"],
        stage=JobStage(row["stage"]),
        status=JobStatus(row["status"]),
        attempts=int(row["attempts"]),
        result=json.loads(row["result_json"]) if row["result_json"] is not None else None,
        error=json.loads(row["error_json"]) if row["error_json"] is not None else None,
        started_at=_decode_dt(row["started_at"]),
        completed_at=_decode_dt(row["completed_at"]),
        duration_ms=row["duration_ms"],
        metadata=json.loads(row["metadata_json"] or "{}"),
        parent_job_id=row["parent_job_id"],
        created_at=_decode_dt(row["created_at"]),
        updated_at=_decode_dt(row["updated_at"]),
    )


class SQLiteJobStore:
    """Job store backed by SQLite; the UNIQUE(job_key) constraint provides dedup."""

    def __init__(self, db: SQLiteDatabase, clock: Clock = now_ms):
        self.db = db
        self._clock = clock
        self.db.executescript(JOBS_SCHEMA)

    def _now_iso(self) -> str:
        return ms_to_datetime(self._clock()).isoformat()

    async def create(self, job: Job) -> Job:
        now = self._now_iso()
        created = job.created_at.isoformat() if job.created_at else now
        try:
            await self.db.aexecute(
                "INSERT INTO pipeline_jobs (id, job_key, stage, status, attempts, result_json, error_json, "
                "started_at, completed_at, duration_ms, metadata_json, parent_job_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id,
                    job.job_key,
                    job.stage.value,
                    job.status.value,
                    job.attempts,
                    _encode("result", job.result),
                    _encode("error", job.error),
                    _encode("started_at", job.started_at),
                    _encode("completed_at", job.completed_at),
                    job.duration_ms,
                    _encode("metadata", job.metadata or {}),
                    job.parent_job_id,
                    created,
                    now,
                ),
            )
        except sqlite3.IntegrityError as e:
            if "job_key" in str(e):
                raise DuplicateJobKeyError(job.job_key) from e
            raise
        stored = await self.find_by_id(job.id)
        if stored is None:  # pragma: no cover - insert just succeeded
            raise JobNotFoundError(job.id)
        return stored

    async def find_by_id(self, job_id: str) -> Optional[Job]:
        rows = await self.db.aexecute("SELECT * FROM pipeline_jobs WHERE id = ?", (job_id,))
        return _row_to_job(rows[0]) if rows else None

    async def find_by_key(self, job_key: str) -> Optional[Job]:
        rows = await self.db.aexecute("SELECT * FROM pipeline_jobs WHERE job_key = ?", (job_key,))
        return _row_to_job(rows[0]) if rows else None

    async def update(self, job_id: str, changes: Mapping[str, Any]) -> Job:
        _check_fields(changes)
        assignments = [f"{_COLUMN_FOR_FIELD[k]} = ?" for k in changes]
        params = [_encode(k, v) for k, v in changes.items()]
        assignments.append("updated_at = ?")
        params.append(self._now_iso())
        params.append(job_id)
        await self.db.aexecute(
            f"UPDATE pipeline_jobs SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        job = await self.find_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, *, stage=None, status=None, limit: int = 50) -> List[Job]:
        clauses = []
        params: List[Any] = []
        if stage is not None:
            clauses.append("stage = ?")
            params.append(JobStage(stage).value)
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(0, int(limit)))
        rows = await self.db.aexecute(
            f"SELECT * FROM pipeline_jobs {where} ORDER BY created_at DESC LIMIT ?",
            params,
        )
        return [_row_to_job(r) for r in rows]

    async def ping(self) -> bool:
        try:
            return await self.db.ping()
        except sqlite3.Error as e:
            logger.warning(f"Job store ping failed: {e}")
            return False
