"""
Stage processor: turns a stage runner into a queue consumer.

For each delivered message the processor marks the job running, invokes the
runner under the message's wall-clock timeout and records the outcome:

- success: mark success, then run post-hooks (metrics, chaining)
- failure: mark ``retrying`` while attempts remain, ``failed`` on the last
  attempt, run post-hooks, then re-raise so the transport applies its retry
  policy.

Post-hooks run after the authoritative status write. Each one is isolated: an
exception is logged and the remaining hooks still run.

When the job store itself fails to record a status the processor raises
``JobStatusUpdateError`` so the worker's failure hooks can settle the job.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from loguru import logger

from prodgen_Server_API.app.core.Logging.log_context import log_context
from prodgen_Server_API.app.core.Pipeline.exceptions import JobStatusUpdateError, JobTimeoutError
from prodgen_Server_API.app.core.Pipeline.models import Job, JobStage, JobStatus, next_stage, parse_stage
from prodgen_Server_API.app.core.Pipeline.runners import StageRunContext, StageRunner
from prodgen_Server_API.app.core.Pipeline.status import JobStatusService
from prodgen_Server_API.app.core.Queue.transport import QueueMessage
from prodgen_Server_API.app.core.Utils.time_utils import Clock, now_ms


@dataclass
class StageOutcome:
    stage: JobStage
    job_id: str
    status: str  # "success" | "failure"
    duration_ms: int
    metadata: Dict[str, Any]
    job: Optional[Job] = None
    result: Any = None
    error: Optional[BaseException] = None
    last_attempt: bool = False


PostHook = Callable[[StageOutcome], Awaitable[None]]


def metrics_hook(metrics) -> PostHook:
    """Duration histogram per {stage, status} plus success/failure counters."""
    async def emit_stage_metrics(outcome: StageOutcome) -> None:
        metrics.observe_duration(outcome.stage.value, outcome.status, outcome.duration_ms)
        if outcome.status == "success":
            metrics.record_success(outcome.stage.value)
        else:
            metrics.record_failure(outcome.stage.value)
    return emit_stage_metrics


def chaining_hook(orchestrator) -> PostHook:
    """On success with ``chainNext`` set, schedule the next stage with parent linkage."""
    async def chain_next_stage(outcome: StageOutcome) -> None:
        if outcome.status != "success" or not outcome.metadata.get("chainNext"):
            return
        following = next_stage(outcome.stage)
        if following is None:
            return
        child = await orchestrator.run_stage(
            following,
            parent_job_id=outcome.job_id,
            context={"trigger": "chain"},
            chain_next=next_stage(following) is not None,
        )
        logger.info(f"Chained {outcome.stage.value} -> {following.value}: job {child.id} (parent {outcome.job_id})")
    return chain_next_stage


class StageProcessor:
    def __init__(
        self,
        stage: JobStage | str,
        runner: StageRunner,
        status: JobStatusService,
        *,
        post_hooks: Optional[Sequence[PostHook]] = None,
        metrics: Any = None,
        clock: Clock = now_ms,
    ):
        self.stage = parse_stage(stage)
        self.runner = runner
        self.status = status
        self.post_hooks: List[PostHook] = list(post_hooks or [])
        self._metrics = metrics
        self._clock = clock

    async def __call__(self, message: QueueMessage) -> Any:
        payload = message.payload or {}
        job_id = str(payload["jobId"])
        metadata: Dict[str, Any] = dict(payload.get("metadata") or {})
        with log_context(job_id=job_id, stage=self.stage.value):
            try:
                existing = await self.status.store.find_by_id(job_id)
                if existing is not None and existing.is_terminal:
                    # Redelivery after the outcome was already recorded
                    logger.warning(f"Job {job_id} already {existing.status.value}; skipping redelivered message")
                    return existing.result
                await self.status.mark_running(job_id)
            except Exception as store_exc:
                raise JobStatusUpdateError(job_id, JobStatus.RUNNING.value, store_exc) from store_exc
            started = self._clock()
            self._gauge("job_started")
            try:
                result = await self._invoke(message, job_id, metadata)
            except Exception as exc:
                duration = max(0, self._clock() - started)
                remaining = message.max_attempts - (message.attempts_made + 1)
                target = JobStatus.RETRYING if remaining > 0 else JobStatus.FAILED
                logger.error(
                    f"Stage failed: stage={self.stage.value} job_id={job_id} "
                    f"attempt={message.attempts_made + 1}/{message.max_attempts} remaining={max(remaining, 0)}: {exc}"
                )
                job = None
                status_error = None
                try:
                    job = await self.status.mark_failure(job_id, exc, target)
                except Exception as store_exc:
                    logger.error(f"Could not record failure for job {job_id}: {store_exc}")
                    status_error = JobStatusUpdateError(job_id, target.value, store_exc)
                await self._run_post_hooks(
                    StageOutcome(
                        stage=self.stage,
                        job_id=job_id,
                        status="failure",
                        duration_ms=duration,
                        metadata=metadata,
                        job=job,
                        error=exc,
                        last_attempt=remaining <= 0,
                    )
                )
                if status_error is not None:
                    raise status_error from exc
                raise
            finally:
                self._gauge("job_finished")

            try:
                persisted = await self.status.mark_success(job_id, result if result is not None else {})
            except Exception as store_exc:
                logger.error(f"Could not record success for job {job_id}: {store_exc}")
                raise JobStatusUpdateError(job_id, JobStatus.SUCCESS.value, store_exc) from store_exc
            await self._run_post_hooks(
                StageOutcome(
                    stage=self.stage,
                    job_id=job_id,
                    status="success",
                    duration_ms=max(0, self._clock() - started),
                    metadata=metadata,
                    job=persisted,
                    result=persisted.result,
                )
            )
            return persisted.result

    async def _invoke(self, message: QueueMessage, job_id: str, metadata: Dict[str, Any]) -> Any:
        ctx = StageRunContext(
            job_id=job_id,
            stage=self.stage,
            metadata=metadata,
            attempt=message.attempts_made + 1,
            max_attempts=message.max_attempts,
            message_id=message.id,
        )
        timeout_ms = message.options.timeout_ms
        if inspect.iscoroutinefunction(self.runner):
            call = self.runner(ctx)
        else:
            # Blocking runners keep the event loop free for the rest of the pool
            call = asyncio.to_thread(self.runner, ctx)
        try:
            result = await asyncio.wait_for(call, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise JobTimeoutError(job_id, timeout_ms) from None
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run_post_hooks(self, outcome: StageOutcome) -> None:
        for hook in self.post_hooks:
            try:
                await hook(outcome)
            except Exception as e:
                logger.error(f"Post-hook {getattr(hook, '__name__', hook)!r} failed for job {outcome.job_id}: {e}")

    def _gauge(self, method: str) -> None:
        if self._metrics is None:
            return
        try:
            getattr(self._metrics, method)(self.stage.value)
        except Exception as e:
            logger.debug(f"Active jobs gauge update failed: {e}")
