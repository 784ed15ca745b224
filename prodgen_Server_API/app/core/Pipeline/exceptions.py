# exceptions.py
# Description: Exception hierarchy for the pipeline orchestration subsystem
#
# Imports
from typing import Optional

#######################################################################################################################
#
# Base Exceptions

class PipelineError(Exception):
    """Base exception for the pipeline subsystem"""
    pass


#######################################################################################################################
#
# Job Store Exceptions

class DuplicateJobKeyError(PipelineError):
    """A job with the same job_key already exists"""
    def __init__(self, job_key: str):
        self.job_key = job_key
        super().__init__(f"Job key already exists: {job_key}")


class JobNotFoundError(PipelineError):
    """No job with the given id"""
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobStatusUpdateError(PipelineError):
    """The job store could not record a status change for a delivered job"""
    def __init__(self, job_id: str, target: str, cause: BaseException):
        self.job_id = job_id
        self.target = target
        self.cause = cause
        super().__init__(f"Could not record {target} for job {job_id}: {cause}")


class InvalidTransitionError(PipelineError):
    """Requested status change is not allowed by the job state machine"""
    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


#######################################################################################################################
#
# Stage / Execution Exceptions

class UnknownStageError(PipelineError):
    """Stage name is not part of the pipeline"""
    def __init__(self, stage: object):
        self.stage = stage
        super().__init__(f'Unknown stage "{stage}"')


class CircuitOpenError(PipelineError):
    """Execution rejected because the queue's circuit is open"""
    def __init__(self, name: str, retry_after_ms: Optional[int] = None):
        self.name = name
        self.retry_after_ms = retry_after_ms
        message = f"Circuit breaker {name} is OPEN"
        if retry_after_ms is not None:
            message += f" (retry in {retry_after_ms}ms)"
        super().__init__(message)


class JobTimeoutError(PipelineError):
    """A single execution exceeded its wall-clock limit"""
    def __init__(self, job_id: str, timeout_ms: int):
        self.job_id = job_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Job {job_id} timed out after {timeout_ms}ms")


class JobStalledError(PipelineError):
    """A message lost its lock more often than the stall budget allows"""
    def __init__(self, message_id: str, stalled_count: int):
        self.message_id = message_id
        self.stalled_count = stalled_count
        super().__init__(f"Message {message_id} stalled {stalled_count} time(s); giving up")

#
# End of exceptions.py
#######################################################################################################################
