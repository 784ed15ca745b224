"""
Runtime wiring tests: backend selection, embedded workers and failure hooks.
"""

import asyncio
import uuid

import pytest

from prodgen_Server_API.app.core.config import get_settings, reset_settings
from prodgen_Server_API.app.core.Infrastructure.kv_cache import InMemoryKeyValueCache
from prodgen_Server_API.app.core.Pipeline.exceptions import CircuitOpenError, JobStatusUpdateError
from prodgen_Server_API.app.core.Pipeline.job_store import InMemoryJobStore, SQLiteJobStore
from prodgen_Server_API.app.core.Pipeline.models import JobStage, JobStatus
from prodgen_Server_API.app.core.Pipeline.runners import get_runner_registry
from prodgen_Server_API.app.core.Queue.memory_transport import InMemoryQueueTransport
from prodgen_Server_API.app.core.Queue.transport import QueueMessage
from prodgen_Server_API.app.core.Queue.worker import WorkerFailure
from prodgen_Server_API.app.services.pipeline_runtime import PipelineRuntime, job_options_from_settings


def _runtime() -> PipelineRuntime:
    settings = get_settings()
    return PipelineRuntime(
        settings,
        store=InMemoryJobStore(),
        transport=InMemoryQueueTransport(default_options=job_options_from_settings(settings), poll_interval_s=0.005),
        cache=InMemoryKeyValueCache(),
        registry=get_runner_registry(),
    )


async def _wait_for_status(runtime, job_id, status, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        job = await runtime.store.find_by_id(job_id)
        if job is not None and job.status == status:
            return job
        await asyncio.sleep(0.02)
    raise AssertionError(f"job {job_id} did not reach {status.value}")


@pytest.mark.unit
class TestRuntimeFromSettings:
    @pytest.mark.asyncio
    async def test_in_process_defaults(self):
        runtime = await PipelineRuntime.from_settings()
        try:
            assert isinstance(runtime.store, InMemoryJobStore)
            assert isinstance(runtime.transport, InMemoryQueueTransport)
            assert runtime.queue_names == ["scrape", "analyze", "generate", "list"]
            assert await runtime.readiness() == {"store": True, "transport": True}
        finally:
            await runtime.close()

    @pytest.mark.asyncio
    async def test_sqlite_store_when_path_set(self, monkeypatch, tmp_path):
        monkeypatch.setenv("JOBS_DB_PATH", str(tmp_path / "jobs.db"))
        reset_settings()

        runtime = await PipelineRuntime.from_settings()
        try:
            assert isinstance(runtime.store, SQLiteJobStore)
            assert (tmp_path / "jobs.db").exists()
        finally:
            await runtime.close()

    def test_job_options_follow_settings(self, monkeypatch):
        monkeypatch.setenv("JOB_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("JOB_BACKOFF_DELAY_MS", "1000")
        reset_settings()

        options = job_options_from_settings(get_settings())
        assert options.attempts == 5
        assert options.backoff.delay_for(2) == 2000

    def test_breakers_are_per_queue_and_reused(self):
        runtime = _runtime()
        assert runtime.breaker_for("scrape") is runtime.breaker_for("scrape")
        assert runtime.breaker_for("scrape") is not runtime.breaker_for("analyze")


@pytest.mark.integration
class TestEmbeddedWorkers:
    @pytest.mark.asyncio
    async def test_stage_without_runner_is_not_consumed(self):
        registry = get_runner_registry()

        @registry.runner("scrape")
        async def scrape(ctx):
            return {"items": 1}

        runtime = _runtime()
        await runtime.start_workers()
        try:
            assert list(runtime.workers) == ["scrape"]
            assert runtime.workers["scrape"].running is True
        finally:
            await runtime.close()
        assert runtime.workers == {}

    @pytest.mark.asyncio
    async def test_job_runs_and_chains_to_next_stage(self):
        registry = get_runner_registry()
        seen = []

        @registry.runner("scrape")
        async def scrape(ctx):
            seen.append(("scrape", ctx.job_id))
            return {"items": 3}

        @registry.runner("analyze")
        def analyze(ctx):
            seen.append(("analyze", ctx.job_id))
            return {"insights": 2}

        runtime = _runtime()
        await runtime.start_workers()
        try:
            job = await runtime.orchestrator.run_stage(JobStage.SCRAPE, chain_next=True, context={"trigger": "test"})
            done = await _wait_for_status(runtime, job.id, JobStatus.SUCCESS)
            assert done.result == {"items": 3}

            async def analyze_job():
                children = await runtime.store.list_jobs(stage=JobStage.ANALYZE)
                return children[0] if children else None

            for _ in range(250):
                child = await analyze_job()
                if child is not None:
                    break
                await asyncio.sleep(0.02)
            assert child is not None
            assert child.parent_job_id == job.id
            child = await _wait_for_status(runtime, child.id, JobStatus.SUCCESS)
            assert child.result == {"insights": 2}
        finally:
            await runtime.close()

        assert [stage for stage, _ in seen] == ["scrape", "analyze"]


@pytest.mark.unit
class TestUnprocessedFailureHook:
    @pytest.mark.asyncio
    async def test_circuit_rejection_moves_job_to_retrying(self):
        runtime = _runtime()
        job = await runtime.orchestrator.run_stage(JobStage.GENERATE)
        message = QueueMessage(id=job.job_key, queue="generate", payload={"jobId": job.id})

        await runtime.record_unprocessed_failure(
            WorkerFailure(
                message=message,
                error=CircuitOpenError("generate", 60_000),
                final=False,
                attempts_made=1,
                consumer_invoked=False,
            )
        )
        updated = await runtime.store.find_by_id(job.id)
        assert updated.status == JobStatus.RETRYING
        assert updated.attempts == 1

    @pytest.mark.asyncio
    async def test_final_rejection_fails_job(self):
        runtime = _runtime()
        job = await runtime.orchestrator.run_stage(JobStage.LIST)
        message = QueueMessage(id=job.job_key, queue="list", payload={"jobId": job.id})

        await runtime.record_unprocessed_failure(
            WorkerFailure(message=message, error=RuntimeError("stalled"), final=True, attempts_made=3, consumer_invoked=False)
        )
        assert (await runtime.store.find_by_id(job.id)).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_processor_failures_are_left_to_the_processor(self):
        runtime = _runtime()
        job = await runtime.orchestrator.run_stage(JobStage.LIST)
        message = QueueMessage(id=job.job_key, queue="list", payload={"jobId": job.id})

        await runtime.record_unprocessed_failure(
            WorkerFailure(message=message, error=RuntimeError("x"), final=False, attempts_made=1, consumer_invoked=True)
        )
        assert (await runtime.store.find_by_id(job.id)).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_status_write_failure_is_settled_by_hook(self):
        runtime = _runtime()
        job = await runtime.orchestrator.run_stage(JobStage.ANALYZE)
        await runtime.status.mark_running(job.id)
        message = QueueMessage(id=job.job_key, queue="analyze", payload={"jobId": job.id})
        error = JobStatusUpdateError(job.id, "success", ConnectionError("store unavailable"))

        await runtime.record_unprocessed_failure(
            WorkerFailure(message=message, error=error, final=True, attempts_made=1, consumer_invoked=True)
        )
        updated = await runtime.store.find_by_id(job.id)
        assert updated.status == JobStatus.FAILED
        assert updated.attempts == 1
        assert updated.error["name"] == "JobStatusUpdateError"


class SuccessWriteFailsStore(InMemoryJobStore):
    """Job store that refuses every write of the success status."""

    async def update(self, job_id, changes):
        if changes.get("status") == JobStatus.SUCCESS:
            raise ConnectionError("job store unavailable")
        return await super().update(job_id, changes)


@pytest.mark.unit
class TestStoreFailureDuringProcessing:
    @pytest.mark.asyncio
    async def test_unrecorded_success_ends_failed_with_dead_letter(self, monkeypatch):
        monkeypatch.setenv("JOB_BACKOFF_DELAY_MS", "0")
        reset_settings()
        settings = get_settings()
        registry = get_runner_registry()

        @registry.runner("analyze")
        async def analyze(ctx):
            return {"insights": 1}

        runtime = PipelineRuntime(
            settings,
            store=SuccessWriteFailsStore(),
            transport=InMemoryQueueTransport(default_options=job_options_from_settings(settings)),
            cache=InMemoryKeyValueCache(),
            registry=registry,
        )
        worker = runtime.build_worker(JobStage.ANALYZE)
        job = await runtime.orchestrator.run_stage(JobStage.ANALYZE)

        statuses = []
        for _ in range(3):
            token = uuid.uuid4().hex
            message = await runtime.transport.reserve("analyze", token=token, lock_ms=30_000, wait_s=0)
            assert message is not None
            await worker.process(message, token)
            statuses.append((await runtime.store.find_by_id(job.id)).status)

        assert statuses == [JobStatus.RETRYING, JobStatus.RETRYING, JobStatus.FAILED]
        final = await runtime.store.find_by_id(job.id)
        assert final.attempts == 3
        assert final.error["name"] == "JobStatusUpdateError"
        assert await runtime.dead_letters.get("analyze", job.id) is not None
        assert (await runtime.transport.counts("analyze"))["failed"] == 1
