"""
Pipeline orchestrator: the single entry point for starting a stage.

`run_stage` derives a job key from the dedup strategy, creates the Job record
and enqueues the stage message. A job-key collision returns the existing Job,
which makes automatic triggers idempotent inside one dedup window. Store
errors other than the collision propagate to the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from loguru import logger

from prodgen_Server_API.app.core.Pipeline.dedup import DedupKeyStrategy, FixedWindowDedup
from prodgen_Server_API.app.core.Pipeline.exceptions import DuplicateJobKeyError
from prodgen_Server_API.app.core.Pipeline.job_store import JobStore
from prodgen_Server_API.app.core.Pipeline.models import (
    Job,
    JobStage,
    JobStatus,
    new_job_id,
    next_stage,
    parse_stage,
    queue_name_for,
)
from prodgen_Server_API.app.core.Queue.transport import JobOptions, QueueTransport
from prodgen_Server_API.app.core.Utils.time_utils import Clock, now_ms


class PipelineOrchestrator:
    def __init__(
        self,
        store: JobStore,
        transport: QueueTransport,
        *,
        dedup: Optional[DedupKeyStrategy] = None,
        job_options: Optional[JobOptions] = None,
        clock: Clock = now_ms,
    ):
        self.store = store
        self.transport = transport
        self.dedup = dedup or FixedWindowDedup()
        self.job_options = job_options or JobOptions()
        self._clock = clock

    @staticmethod
    def get_next_stage(stage: JobStage | str) -> Optional[JobStage]:
        return next_stage(stage)

    async def run_stage(
        self,
        stage: JobStage | str,
        *,
        manual: bool = False,
        parent_job_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        chain_next: bool = False,
        idempotency_key: Optional[str] = None,
    ) -> Job:
        """Create (or look up) the Job for ``stage`` and enqueue it.

        Args:
            stage: Stage name or JobStage.
            manual: Manual runs always get a fresh key and always execute.
            parent_job_id: Previous stage's job when chaining.
            context: Trigger context merged into the job metadata.
            chain_next: Schedule the next stage after this one succeeds.
            idempotency_key: Caller-supplied key, used by the external-key strategy.

        Raises:
            UnknownStageError: For names outside the pipeline.
        """
        stage = parse_stage(stage)
        job_key = self.dedup.job_key(
            stage, manual=manual, now_ms=self._clock(), idempotency_key=idempotency_key
        )
        metadata: Dict[str, Any] = dict(context or {})
        metadata["chainNext"] = bool(chain_next)
        metadata["manual"] = bool(manual)

        candidate = Job(
            id=new_job_id(),
            job_key=job_key,
            stage=stage,
            status=JobStatus.PENDING,
            metadata=metadata,
            parent_job_id=parent_job_id,
        )
        try:
            job = await self.store.create(candidate)
        except DuplicateJobKeyError:
            existing = await self.store.find_by_key(job_key)
            if existing is None:
                raise
            logger.info(f"Stage {stage.value}: job key {job_key} already scheduled as job {existing.id}")
            return existing

        payload = {"jobId": job.id, "stage": stage.value, "metadata": job.metadata}
        await self.transport.enqueue(
            queue_name_for(stage),
            payload,
            dedup_id=job_key,
            options=self.job_options,
        )
        logger.info(
            f"Queued stage job: stage={stage.value} job_id={job.id} key={job_key} "
            f"manual={manual} chain_next={chain_next} parent={parent_job_id}"
        )
        return job

    async def chain_pipeline_from(
        self,
        start_stage: JobStage | str,
        *,
        parent_job_id: Optional[str] = None,
        manual: bool = False,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Job:
        """Run ``start_stage`` and chain every following stage on success."""
        stage = parse_stage(start_stage)
        job = await self.run_stage(
            stage,
            manual=manual,
            parent_job_id=parent_job_id,
            context=context,
            chain_next=self.get_next_stage(stage) is not None,
        )
        logger.info(f"Queued pipeline from orchestrator: start={stage.value} job_id={job.id}")
        return job
