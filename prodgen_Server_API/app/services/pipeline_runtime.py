"""
Pipeline runtime

Wires the pipeline together from settings: job store, queue transport,
key-value cache, orchestrator, per-queue circuit breakers, stage processors
and worker pools, plus the admin stores served over HTTP.

Backends:
  REDIS_URL set    -> Redis transport, Redis cache (and shared breaker state
                      when CIRCUIT_STATE_BACKEND=redis)
  REDIS_URL unset  -> in-process transport and cache (single instance)
  JOBS_DB_PATH set -> SQLite job store; in-memory store otherwise
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from loguru import logger

from prodgen_Server_API.app.core.Admin.key_store import ApiKeyStore, SecretCipher
from prodgen_Server_API.app.core.Admin.settings_store import SettingsStore
from prodgen_Server_API.app.core.config import PipelineSettings, get_settings
from prodgen_Server_API.app.core.DB_Management.sqlite_db import SQLiteDatabase
from prodgen_Server_API.app.core.Infrastructure.kv_cache import (
    InMemoryKeyValueCache,
    KeyValueCache,
    RedisKeyValueCache,
)
from prodgen_Server_API.app.core.Infrastructure.redis_factory import create_async_redis_client
from prodgen_Server_API.app.core.Metrics.pipeline_metrics import PipelineMetrics, get_pipeline_metrics
from prodgen_Server_API.app.core.Pipeline.dead_letter import DeadLetterStore
from prodgen_Server_API.app.core.Pipeline.exceptions import JobStatusUpdateError
from prodgen_Server_API.app.core.Pipeline.dedup import build_dedup_strategy
from prodgen_Server_API.app.core.Pipeline.job_store import InMemoryJobStore, JobStore, SQLiteJobStore
from prodgen_Server_API.app.core.Pipeline.models import PIPELINE_ORDER, JobStage, queue_name_for
from prodgen_Server_API.app.core.Pipeline.orchestrator import PipelineOrchestrator
from prodgen_Server_API.app.core.Pipeline.runners import (
    StageRunnerRegistry,
    get_runner_registry,
    load_runner_module,
)
from prodgen_Server_API.app.core.Pipeline.stage_processor import (
    StageProcessor,
    chaining_hook,
    metrics_hook,
)
from prodgen_Server_API.app.core.Pipeline.status import JobStatusService
from prodgen_Server_API.app.core.Queue.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitStateStore,
    InMemoryCircuitStateStore,
    KeyValueCircuitStateStore,
)
from prodgen_Server_API.app.core.Queue.memory_transport import InMemoryQueueTransport
from prodgen_Server_API.app.core.Queue.redis_transport import RedisQueueTransport
from prodgen_Server_API.app.core.Queue.transport import BackoffPolicy, JobOptions, QueueTransport
from prodgen_Server_API.app.core.Queue.worker import StageWorker, WorkerConfig, WorkerFailure
from prodgen_Server_API.app.core.Utils.time_utils import Clock, now_ms


def job_options_from_settings(settings: PipelineSettings) -> JobOptions:
    return JobOptions(
        attempts=settings.JOB_MAX_ATTEMPTS,
        backoff=BackoffPolicy(type="exponential", delay_ms=settings.JOB_BACKOFF_DELAY_MS),
        timeout_ms=settings.JOB_TIMEOUT_MS,
        remove_on_complete=settings.JOB_REMOVE_ON_COMPLETE,
        remove_on_fail=settings.JOB_REMOVE_ON_FAIL,
    )


class PipelineRuntime:
    def __init__(
        self,
        settings: PipelineSettings,
        *,
        store: JobStore,
        transport: QueueTransport,
        cache: KeyValueCache,
        registry: StageRunnerRegistry,
        db: Optional[SQLiteDatabase] = None,
        metrics: Optional[PipelineMetrics] = None,
        breaker_store: Optional[CircuitStateStore] = None,
        redis_client: Any = None,
        clock: Clock = now_ms,
    ):
        self.settings = settings
        self.store = store
        self.transport = transport
        self.cache = cache
        self.registry = registry
        self.metrics = metrics or get_pipeline_metrics()
        self.db = db or SQLiteDatabase(None)
        self._redis = redis_client
        self._clock = clock

        self.job_options = job_options_from_settings(settings)
        self.orchestrator = PipelineOrchestrator(
            store,
            transport,
            dedup=build_dedup_strategy(settings.DEDUP_STRATEGY, settings.DEDUP_WINDOW_MS),
            job_options=self.job_options,
            clock=clock,
        )
        self.status = JobStatusService(store, include_stack=settings.include_error_stack, clock=clock)
        self.dead_letters = DeadLetterStore(
            cache,
            ttl_seconds=settings.DLQ_TTL_SECONDS,
            include_stack=settings.include_error_stack,
            metrics=self.metrics,
            clock=clock,
        )
        self.settings_store = SettingsStore(self.db, clock=clock)
        self.api_keys = ApiKeyStore(self.db, SecretCipher(settings.APP_ENCRYPTION_KEY), clock=clock)
        self.breaker_store = breaker_store or InMemoryCircuitStateStore()
        self.breaker_config = CircuitBreakerConfig(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            cooldown_ms=settings.CIRCUIT_COOLDOWN_MS,
            success_decay=settings.CIRCUIT_SUCCESS_DECAY,
        )
        self.breakers: Dict[str, CircuitBreaker] = {}
        self.workers: Dict[str, StageWorker] = {}

    @classmethod
    async def from_settings(
        cls,
        settings: Optional[PipelineSettings] = None,
        *,
        registry: Optional[StageRunnerRegistry] = None,
    ) -> "PipelineRuntime":
        settings = settings or get_settings()
        registry = registry or get_runner_registry()
        load_runner_module(settings.PIPELINE_RUNNERS_MODULE)

        db = SQLiteDatabase(settings.JOBS_DB_PATH)
        store: JobStore = SQLiteJobStore(db) if settings.JOBS_DB_PATH else InMemoryJobStore()
        job_options = job_options_from_settings(settings)

        redis_client = None
        breaker_store: CircuitStateStore = InMemoryCircuitStateStore()
        if settings.REDIS_URL:
            redis_client = await create_async_redis_client(url=settings.REDIS_URL, context="pipeline")
            transport: QueueTransport = RedisQueueTransport(redis_client, default_options=job_options)
            cache: KeyValueCache = RedisKeyValueCache(redis_client)
            if settings.CIRCUIT_STATE_BACKEND == "redis":
                breaker_store = KeyValueCircuitStateStore(cache)
        else:
            transport = InMemoryQueueTransport(default_options=job_options)
            cache = InMemoryKeyValueCache()
            if settings.CIRCUIT_STATE_BACKEND == "redis":
                logger.warning("CIRCUIT_STATE_BACKEND=redis requires REDIS_URL; keeping breaker state in process")

        return cls(
            settings,
            store=store,
            transport=transport,
            cache=cache,
            registry=registry,
            db=db,
            breaker_store=breaker_store,
            redis_client=redis_client,
        )

    @property
    def queue_names(self) -> List[str]:
        return [queue_name_for(stage) for stage in PIPELINE_ORDER]

    def breaker_for(self, queue: str) -> CircuitBreaker:
        breaker = self.breakers.get(queue)
        if breaker is None:
            breaker = CircuitBreaker(
                queue,
                self.breaker_config,
                store=self.breaker_store,
                clock=self._clock,
                metrics=self.metrics,
            )
            self.breakers[queue] = breaker
        return breaker

    def build_processor(self, stage: JobStage) -> StageProcessor:
        runner = self.registry.get(stage)
        if runner is None:
            raise LookupError(f"No stage runner registered for {stage.value}")
        return StageProcessor(
            stage,
            runner,
            self.status,
            post_hooks=[metrics_hook(self.metrics), chaining_hook(self.orchestrator)],
            metrics=self.metrics,
            clock=self._clock,
        )

    def build_worker(self, stage: JobStage) -> StageWorker:
        queue = queue_name_for(stage)
        config = WorkerConfig(
            queue=queue,
            concurrency=self.settings.JOB_CONCURRENCY,
            lock_ms=self.settings.JOB_STALLED_INTERVAL_MS,
            stalled_interval_ms=self.settings.JOB_STALLED_INTERVAL_MS,
            max_stalled_count=self.settings.JOB_MAX_STALLED_COUNT,
        )
        return StageWorker(
            self.transport,
            self.build_processor(stage),
            config,
            breaker=self.breaker_for(queue),
            failure_hooks=[self.record_unprocessed_failure, self.dead_letters.on_worker_failure],
        )

    async def record_unprocessed_failure(self, failure: WorkerFailure) -> None:
        """Keep job status in step for attempts the stage processor did not record.

        Covers circuit rejections and stalls (consumer never ran) and deliveries
        where the processor ran but the store refused its status write.
        """
        if failure.consumer_invoked and not isinstance(failure.error, JobStatusUpdateError):
            return
        job_id = failure.message.payload.get("jobId")
        if not job_id:
            return
        await self.status.record_unprocessed_failure(str(job_id), failure.error, final=failure.final)

    async def start_workers(self) -> None:
        await self.transport.wait_until_ready(self.queue_names)
        for stage in PIPELINE_ORDER:
            queue = queue_name_for(stage)
            if queue in self.workers:
                continue
            if stage not in self.registry:
                logger.warning(f"No stage runner registered for {stage.value}; its queue will not be consumed")
                continue
            worker = self.build_worker(stage)
            await worker.start()
            self.workers[queue] = worker

    async def stop_workers(self) -> None:
        for worker in list(self.workers.values()):
            await worker.close()
        self.workers.clear()

    async def close(self) -> None:
        await self.stop_workers()
        await self.transport.close()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        self.db.close()

    async def queue_counts(self) -> Dict[str, Dict[str, int]]:
        return {queue: await self.transport.counts(queue) for queue in self.queue_names}

    async def readiness(self) -> Dict[str, bool]:
        """Reachability of the job store and the queue transport."""
        return {
            "store": await self.store.ping(),
            "transport": await self.transport.ping(),
        }
