"""
Tests for the per-stage cron scheduler.
"""

from unittest.mock import AsyncMock

import pytest

from prodgen_Server_API.app.core.config import get_settings, reset_settings
from prodgen_Server_API.app.core.Pipeline.models import JobStage
from prodgen_Server_API.app.services.pipeline_cron import (
    CronSchedule,
    PipelineCronScheduler,
    default_schedules,
)

pytestmark = pytest.mark.unit


def _scheduler(schedules=None, **kwargs):
    orchestrator = AsyncMock()
    return PipelineCronScheduler(orchestrator, schedules or default_schedules(get_settings()), **kwargs), orchestrator


class TestSchedules:
    def test_defaults_are_staggered(self):
        schedules = default_schedules(get_settings())
        assert [(s.stage, s.expression, s.chain_from) for s in schedules] == [
            (JobStage.SCRAPE, "0 */6 * * *", True),
            (JobStage.ANALYZE, "5 */6 * * *", False),
            (JobStage.GENERATE, "10 */6 * * *", False),
            (JobStage.LIST, "15 */6 * * *", False),
        ]

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CRON_LIST", "30 1 * * *")
        reset_settings()
        assert default_schedules(get_settings())[-1].expression == "30 1 * * *"

    def test_invalid_expression_is_skipped(self):
        scheduler, _ = _scheduler(
            [CronSchedule(JobStage.SCRAPE, "not a cron"), CronSchedule(JobStage.LIST, "15 */6 * * *")]
        )
        valid = scheduler.build_triggers()
        assert [s.stage for s, _ in valid] == [JobStage.LIST]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_registers_one_job_per_stage(self):
        scheduler, _ = _scheduler(timezone="UTC")
        await scheduler.start()
        try:
            assert scheduler.job_ids() == [
                "pipeline-cron-analyze",
                "pipeline-cron-generate",
                "pipeline-cron-list",
                "pipeline-cron-scrape",
            ]
            # Idempotent
            await scheduler.start()
            assert len(scheduler.job_ids()) == 4
        finally:
            await scheduler.stop()
        assert scheduler.job_ids() == []

    @pytest.mark.asyncio
    async def test_disabled_schedules_nothing(self):
        scheduler, _ = _scheduler(enabled=False)
        await scheduler.start()
        assert scheduler.job_ids() == []
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_from_settings_honours_cron_enabled(self):
        # CRON_ENABLED=false in the test environment
        scheduler = PipelineCronScheduler.from_settings(AsyncMock(), get_settings())
        assert scheduler.enabled is False
        assert scheduler.timezone == "UTC"


class TestFire:
    @pytest.mark.asyncio
    async def test_scrape_starts_chained_pipeline(self):
        scheduler, orchestrator = _scheduler()
        await scheduler.fire(CronSchedule(JobStage.SCRAPE, "0 */6 * * *", chain_from=True))

        orchestrator.chain_pipeline_from.assert_awaited_once_with(JobStage.SCRAPE, context={"trigger": "cron"})
        orchestrator.run_stage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_middle_stage_chains_forward(self):
        scheduler, orchestrator = _scheduler()
        await scheduler.fire(CronSchedule(JobStage.ANALYZE, "5 */6 * * *"))

        orchestrator.run_stage.assert_awaited_once_with(JobStage.ANALYZE, context={"trigger": "cron"}, chain_next=True)

    @pytest.mark.asyncio
    async def test_last_stage_does_not_chain(self):
        scheduler, orchestrator = _scheduler()
        await scheduler.fire(CronSchedule(JobStage.LIST, "15 */6 * * *"))

        orchestrator.run_stage.assert_awaited_once_with(JobStage.LIST, context={"trigger": "cron"}, chain_next=False)

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self):
        scheduler, orchestrator = _scheduler()
        orchestrator.run_stage.side_effect = ConnectionError("redis down")

        await scheduler.fire(CronSchedule(JobStage.GENERATE, "10 */6 * * *"))
        orchestrator.run_stage.assert_awaited_once()
