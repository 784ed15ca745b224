# status.py
# Description: Job status transitions (running / success / failure) and error normalization
#
# Imports
import traceback
from typing import Any, Dict, Optional
#
# 3rd-party imports
from loguru import logger
#
# Local imports
from prodgen_Server_API.app.core.Pipeline.exceptions import InvalidTransitionError, JobNotFoundError
from prodgen_Server_API.app.core.Pipeline.job_store import JobStore
from prodgen_Server_API.app.core.Pipeline.models import Job, JobStatus, can_transition
from prodgen_Server_API.app.core.Utils.time_utils import Clock, ms_to_datetime, now_ms

#######################################################################################################################
#
# Functions:

def normalize_error(error: Any, *, include_stack: bool = True) -> Dict[str, Any]:
    """Convert anything raised by a stage runner into ``{message, name, stack?}``."""
    if isinstance(error, BaseException):
        normalized: Dict[str, Any] = {
            "message": str(error) or type(error).__name__,
            "name": type(error).__name__,
        }
        if include_stack:
            normalized["stack"] = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        return normalized
    return {"message": "Unknown error", "name": "UnknownError", "detail": repr(error)}


class JobStatusService:
    """
    Applies the job state machine on top of a JobStore.

    pending -> running -> (retrying -> running)* -> success | failed
    """

    def __init__(self, store: JobStore, *, include_stack: bool = True, clock: Clock = now_ms):
        self.store = store
        self.include_stack = include_stack
        self._clock = clock

    async def _get(self, job_id: str) -> Job:
        job = await self.store.find_by_id(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _ensure_transition(self, job: Job, target: JobStatus) -> None:
        if not can_transition(job.status, target):
            raise InvalidTransitionError(job.id, job.status.value, target.value)

    def _finish_fields(self, job: Job) -> Dict[str, Any]:
        completed_ms = self._clock()
        completed_at = ms_to_datetime(completed_ms)
        duration_ms = None
        if job.started_at is not None:
            duration_ms = max(0, int((completed_at - job.started_at).total_seconds() * 1000))
        return {"completed_at": completed_at, "duration_ms": duration_ms}

    async def mark_running(self, job_id: str) -> Job:
        """Set running, count the pickup and restart timing. Safe to repeat on redelivery."""
        job = await self._get(job_id)
        self._ensure_transition(job, JobStatus.RUNNING)
        return await self.store.update(
            job_id,
            {
                "status": JobStatus.RUNNING,
                "attempts": job.attempts + 1,
                "started_at": ms_to_datetime(self._clock()),
                "completed_at": None,
                "duration_ms": None,
            },
        )

    async def mark_success(self, job_id: str, result: Any) -> Job:
        job = await self._get(job_id)
        self._ensure_transition(job, JobStatus.SUCCESS)
        changes = {"status": JobStatus.SUCCESS, "result": result, "error": None}
        changes.update(self._finish_fields(job))
        updated = await self.store.update(job_id, changes)
        logger.info(f"Job {job_id} ({job.stage.value}) succeeded in {updated.duration_ms}ms")
        return updated

    async def mark_failure(self, job_id: str, error: Any, status: JobStatus) -> Job:
        if status not in (JobStatus.RETRYING, JobStatus.FAILED):
            raise ValueError(f"mark_failure status must be retrying or failed, got {status}")
        job = await self._get(job_id)
        self._ensure_transition(job, status)
        changes = {"status": status, "error": normalize_error(error, include_stack=self.include_stack)}
        changes.update(self._finish_fields(job))
        updated = await self.store.update(job_id, changes)
        logger.warning(f"Job {job_id} ({job.stage.value}) marked {status.value} after attempt {updated.attempts}")
        return updated

    async def record_unprocessed_failure(self, job_id: str, error: Any, *, final: bool) -> Optional[Job]:
        """Record an attempt that failed before or outside the stage processor.

        Circuit rejections and stall exhaustion consume an attempt without the
        processor recording it; this keeps the job's status in step with the
        transport. Terminal jobs are left untouched.
        """
        job = await self._get(job_id)
        if job.is_terminal:
            return None
        if job.status != JobStatus.RUNNING:
            await self.mark_running(job_id)
        target = JobStatus.FAILED if final else JobStatus.RETRYING
        return await self.mark_failure(job_id, error, target)

#
# End of status.py
#######################################################################################################################
