"""
Unit tests for the job state machine and error normalization.
"""

import pytest

from prodgen_Server_API.app.core.Pipeline.exceptions import InvalidTransitionError, JobNotFoundError, UnknownStageError
from prodgen_Server_API.app.core.Pipeline.models import (
    Job,
    JobStage,
    JobStatus,
    can_transition,
    new_job_id,
    parse_stage,
)
from prodgen_Server_API.app.core.Pipeline.status import JobStatusService, normalize_error

pytestmark = pytest.mark.unit


@pytest.fixture
def status(store, clock):
    return JobStatusService(store, include_stack=True, clock=clock)


async def _pending_job(store, stage=JobStage.SCRAPE) -> Job:
    return await store.create(Job(id=new_job_id(), job_key=f"{stage.value}:test:{new_job_id()}", stage=stage))


class TestTransitions:
    def test_allowed_moves(self):
        assert can_transition(JobStatus.PENDING, JobStatus.RUNNING)
        assert can_transition(JobStatus.RUNNING, JobStatus.RETRYING)
        assert can_transition(JobStatus.RETRYING, JobStatus.RUNNING)
        assert can_transition(JobStatus.RUNNING, JobStatus.RUNNING)

    def test_terminal_states_are_final(self):
        for target in JobStatus:
            assert not can_transition(JobStatus.SUCCESS, target)
            assert not can_transition(JobStatus.FAILED, target)

    def test_pending_cannot_finish_directly(self):
        assert not can_transition(JobStatus.PENDING, JobStatus.SUCCESS)
        assert not can_transition(JobStatus.PENDING, JobStatus.FAILED)

    def test_parse_stage(self):
        assert parse_stage(" Scrape ") == JobStage.SCRAPE
        with pytest.raises(UnknownStageError):
            parse_stage("deploy")


class TestNormalizeError:
    def test_exception_with_stack(self):
        try:
            raise RuntimeError("marketplace returned 503")
        except RuntimeError as e:
            normalized = normalize_error(e)
        assert normalized["message"] == "marketplace returned 503"
        assert normalized["name"] == "RuntimeError"
        assert "Traceback" in normalized["stack"]

    def test_stack_omitted_when_disabled(self):
        normalized = normalize_error(ValueError("bad"), include_stack=False)
        assert normalized == {"message": "bad", "name": "ValueError"}

    def test_non_exception_value(self):
        normalized = normalize_error({"code": 7})
        assert normalized["message"] == "Unknown error"
        assert normalized["name"] == "UnknownError"
        assert "7" in normalized["detail"]


class TestJobStatusService:
    @pytest.mark.asyncio
    async def test_running_then_success(self, status, store, clock):
        job = await _pending_job(store)

        running = await status.mark_running(job.id)
        assert running.status == JobStatus.RUNNING
        assert running.attempts == 1
        assert running.started_at is not None

        clock.advance(1500)
        done = await status.mark_success(job.id, {"items": 3})
        assert done.status == JobStatus.SUCCESS
        assert done.result == {"items": 3}
        assert done.duration_ms == 1500
        assert done.completed_at is not None
        assert done.error is None

    @pytest.mark.asyncio
    async def test_retry_cycle_counts_attempts(self, status, store):
        job = await _pending_job(store)
        await status.mark_running(job.id)
        await status.mark_failure(job.id, RuntimeError("boom"), JobStatus.RETRYING)
        again = await status.mark_running(job.id)

        assert again.attempts == 2
        assert again.completed_at is None
        assert again.duration_ms is None

    @pytest.mark.asyncio
    async def test_failure_records_normalized_error(self, status, store):
        job = await _pending_job(store)
        await status.mark_running(job.id)
        failed = await status.mark_failure(job.id, KeyError("asin"), JobStatus.FAILED)

        assert failed.status == JobStatus.FAILED
        assert failed.error["name"] == "KeyError"
        assert "stack" in failed.error

    @pytest.mark.asyncio
    async def test_failure_status_must_be_retrying_or_failed(self, status, store):
        job = await _pending_job(store)
        await status.mark_running(job.id)
        with pytest.raises(ValueError):
            await status.mark_failure(job.id, RuntimeError("x"), JobStatus.SUCCESS)

    @pytest.mark.asyncio
    async def test_success_from_pending_rejected(self, status, store):
        job = await _pending_job(store)
        with pytest.raises(InvalidTransitionError):
            await status.mark_success(job.id, {})

    @pytest.mark.asyncio
    async def test_terminal_job_cannot_restart(self, status, store):
        job = await _pending_job(store)
        await status.mark_running(job.id)
        await status.mark_success(job.id, {})
        with pytest.raises(InvalidTransitionError):
            await status.mark_running(job.id)

    @pytest.mark.asyncio
    async def test_unknown_job(self, status):
        with pytest.raises(JobNotFoundError):
            await status.mark_running("missing")

    @pytest.mark.asyncio
    async def test_unprocessed_failure_moves_pending_job(self, status, store):
        job = await _pending_job(store)
        updated = await status.record_unprocessed_failure(job.id, RuntimeError("circuit open"), final=False)
        assert updated.status == JobStatus.RETRYING
        assert updated.attempts == 1

        final = await status.record_unprocessed_failure(job.id, RuntimeError("circuit open"), final=True)
        assert final.status == JobStatus.FAILED
        assert final.attempts == 2

    @pytest.mark.asyncio
    async def test_unprocessed_failure_ignores_terminal_job(self, status, store):
        job = await _pending_job(store)
        await status.mark_running(job.id)
        await status.mark_success(job.id, {"ok": 1})
        assert await status.record_unprocessed_failure(job.id, RuntimeError("late"), final=True) is None
        assert (await store.find_by_id(job.id)).status == JobStatus.SUCCESS
