"""
Job store contract tests, run against both the in-memory and SQLite stores.
"""

import pytest

from prodgen_Server_API.app.core.DB_Management.sqlite_db import SQLiteDatabase
from prodgen_Server_API.app.core.Pipeline.exceptions import DuplicateJobKeyError, JobNotFoundError
from prodgen_Server_API.app.core.Pipeline.job_store import InMemoryJobStore, SQLiteJobStore
from prodgen_Server_API.app.core.Pipeline.models import Job, JobStage, JobStatus, new_job_id

pytestmark = pytest.mark.unit


@pytest.fixture(params=["memory", "sqlite_file"])
def job_store(request, clock, tmp_path):
    if request.param == "memory":
        yield InMemoryJobStore(clock)
        return
    db = SQLiteDatabase(str(tmp_path / "jobs.db"))
    yield SQLiteJobStore(db, clock)
    db.close()


def _job(key="scrape:auto:1", stage=JobStage.SCRAPE, **kwargs) -> Job:
    return Job(id=new_job_id(), job_key=key, stage=stage, **kwargs)


class TestJobStoreContract:
    @pytest.mark.asyncio
    async def test_create_and_find(self, job_store):
        created = await job_store.create(_job(metadata={"trigger": "cron", "chainNext": True}))

        by_id = await job_store.find_by_id(created.id)
        by_key = await job_store.find_by_key("scrape:auto:1")
        assert by_id.id == by_key.id == created.id
        assert by_id.status == JobStatus.PENDING
        assert by_id.metadata == {"trigger": "cron", "chainNext": True}
        assert by_id.created_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_key_rejected(self, job_store):
        await job_store.create(_job())
        with pytest.raises(DuplicateJobKeyError):
            await job_store.create(_job())

    @pytest.mark.asyncio
    async def test_missing_lookups(self, job_store):
        assert await job_store.find_by_id("nope") is None
        assert await job_store.find_by_key("nope") is None

    @pytest.mark.asyncio
    async def test_update_round_trips_json_fields(self, job_store):
        job = await job_store.create(_job())
        updated = await job_store.update(
            job.id,
            {
                "status": JobStatus.FAILED,
                "attempts": 3,
                "error": {"message": "boom", "name": "RuntimeError"},
                "result": {"items": [1, 2]},
                "duration_ms": 42,
            },
        )
        assert updated.status == JobStatus.FAILED
        assert updated.attempts == 3
        assert updated.error == {"message": "boom", "name": "RuntimeError"}
        assert updated.result == {"items": [1, 2]}
        assert updated.duration_ms == 42

    @pytest.mark.asyncio
    async def test_update_unknown_job(self, job_store):
        with pytest.raises(JobNotFoundError):
            await job_store.update("missing", {"status": JobStatus.RUNNING})

    @pytest.mark.asyncio
    async def test_update_rejects_identity_fields(self, job_store):
        job = await job_store.create(_job())
        with pytest.raises(ValueError):
            await job_store.update(job.id, {"job_key": "other"})

    @pytest.mark.asyncio
    async def test_list_filters(self, job_store, clock):
        await job_store.create(_job("scrape:auto:1"))
        clock.advance(1000)
        analyze = await job_store.create(_job("analyze:auto:1", stage=JobStage.ANALYZE))
        await job_store.update(analyze.id, {"status": JobStatus.RUNNING})

        assert len(await job_store.list_jobs()) == 2
        only_analyze = await job_store.list_jobs(stage=JobStage.ANALYZE)
        assert [j.id for j in only_analyze] == [analyze.id]
        running = await job_store.list_jobs(status=JobStatus.RUNNING)
        assert [j.id for j in running] == [analyze.id]
        assert len(await job_store.list_jobs(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_parent_link(self, job_store):
        parent = await job_store.create(_job("scrape:auto:9"))
        child = await job_store.create(_job("analyze:auto:9", stage=JobStage.ANALYZE, parent_job_id=parent.id))
        assert (await job_store.find_by_id(child.id)).parent_job_id == parent.id

    @pytest.mark.asyncio
    async def test_ping(self, job_store):
        assert await job_store.ping() is True


class TestSQLitePersistence:
    @pytest.mark.asyncio
    async def test_jobs_survive_reopen(self, tmp_path, clock):
        path = str(tmp_path / "persist.db")
        db = SQLiteDatabase(path)
        store = SQLiteJobStore(db, clock)
        job = await store.create(_job("list:auto:3", stage=JobStage.LIST))
        db.close()

        reopened = SQLiteDatabase(path)
        try:
            again = await SQLiteJobStore(reopened, clock).find_by_key("list:auto:3")
            assert again.id == job.id
            assert again.stage == JobStage.LIST
        finally:
            reopened.close()
