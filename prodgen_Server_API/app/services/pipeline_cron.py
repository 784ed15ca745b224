"""
Pipeline cron service

Registers one APScheduler cron job per stage. The stages fire a few minutes
apart (default offsets 0/5/10/15 past every sixth hour) so a stage is
unlikely to start while its upstream producer is still running in the same
cycle. The scrape entry starts a chained pipeline run; the others run their
own stage with chaining enabled when a successor exists.

Env:
  CRON_ENABLED=false           -> log and schedule nothing
  CRON_TIMEZONE=<IANA>         -> timezone for all expressions (default UTC)
  CRON_SCRAPE / CRON_ANALYZE / CRON_GENERATE / CRON_LIST -> per-stage overrides
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from prodgen_Server_API.app.core.config import PipelineSettings
from prodgen_Server_API.app.core.Pipeline.models import JobStage, next_stage
from prodgen_Server_API.app.core.Pipeline.orchestrator import PipelineOrchestrator


@dataclass(frozen=True)
class CronSchedule:
    stage: JobStage
    expression: str
    # Start a full chained run instead of a single stage
    chain_from: bool = False


def default_schedules(settings: PipelineSettings) -> List[CronSchedule]:
    return [
        CronSchedule(JobStage.SCRAPE, settings.CRON_SCRAPE, chain_from=True),
        CronSchedule(JobStage.ANALYZE, settings.CRON_ANALYZE),
        CronSchedule(JobStage.GENERATE, settings.CRON_GENERATE),
        CronSchedule(JobStage.LIST, settings.CRON_LIST),
    ]


class PipelineCronScheduler:
    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        schedules: Sequence[CronSchedule],
        *,
        enabled: bool = True,
        timezone: str = "UTC",
    ) -> None:
        self.orchestrator = orchestrator
        self.schedules = list(schedules)
        self.enabled = enabled
        self.timezone = timezone
        self._aps: Optional[AsyncIOScheduler] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, orchestrator: PipelineOrchestrator, settings: PipelineSettings) -> "PipelineCronScheduler":
        return cls(
            orchestrator,
            default_schedules(settings),
            enabled=settings.CRON_ENABLED,
            timezone=settings.CRON_TIMEZONE,
        )

    def build_triggers(self) -> List[Tuple[CronSchedule, CronTrigger]]:
        """Validate expressions; invalid ones are logged and skipped."""
        valid: List[Tuple[CronSchedule, CronTrigger]] = []
        for schedule in self.schedules:
            try:
                trigger = CronTrigger.from_crontab(schedule.expression, timezone=self.timezone)
            except (ValueError, TypeError) as e:
                logger.error(f"Invalid cron expression for {schedule.stage.value}: '{schedule.expression}' ({e}); skipping")
                continue
            valid.append((schedule, trigger))
        return valid

    async def start(self) -> None:
        async with self._lock:
            if self._aps is not None:
                return
            if not self.enabled:
                logger.warning("Pipeline cron disabled (CRON_ENABLED=false); no schedules registered")
                return
            triggers = self.build_triggers()
            self._aps = AsyncIOScheduler(timezone=self.timezone)
            for schedule, trigger in triggers:
                self._aps.add_job(
                    self.fire,
                    trigger=trigger,
                    args=[schedule],
                    id=f"pipeline-cron-{schedule.stage.value}",
                    replace_existing=True,
                    coalesce=True,
                    max_instances=1,
                )
                logger.info(f"Pipeline cron registered: {schedule.stage.value} at '{schedule.expression}' ({self.timezone})")
            self._aps.start()

    async def stop(self) -> None:
        async with self._lock:
            if self._aps is None:
                return
            self._aps.shutdown(wait=False)
            self._aps = None
            logger.info("Pipeline cron stopped")

    def job_ids(self) -> List[str]:
        if self._aps is None:
            return []
        return sorted(job.id for job in self._aps.get_jobs())

    async def fire(self, schedule: CronSchedule) -> None:
        """Run one schedule entry; failures are logged so the scheduler keeps going."""
        context = {"trigger": "cron"}
        try:
            if schedule.chain_from:
                await self.orchestrator.chain_pipeline_from(schedule.stage, context=context)
            else:
                await self.orchestrator.run_stage(
                    schedule.stage,
                    context=context,
                    chain_next=next_stage(schedule.stage) is not None,
                )
        except Exception as e:
            logger.exception(f"Cron job failed for stage {schedule.stage.value}: {e}")
