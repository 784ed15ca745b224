from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from loguru import logger

from prodgen_Server_API.app.core.Logging.log_context import log_context
from prodgen_Server_API.app.core.Pipeline.exceptions import JobStalledError
from prodgen_Server_API.app.core.Queue.circuit_breaker import CircuitBreaker
from prodgen_Server_API.app.core.Queue.transport import QueueMessage, QueueTransport


Consumer = Callable[[QueueMessage], Awaitable[Any]]


@dataclass
class WorkerConfig:
    queue: str
    concurrency: int = 3
    lock_ms: int = 30_000
    stalled_interval_ms: int = 30_000
    max_stalled_count: int = 1
    poll_wait_s: float = 1.0
    # Backoff after transport errors while reserving
    error_backoff_base_s: float = 1.0
    error_backoff_max_s: float = 30.0
    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")


@dataclass
class WorkerFailure:
    """A failed delivery attempt as seen by failure hooks."""
    message: QueueMessage
    error: BaseException
    final: bool
    attempts_made: int
    # False when the consumer never ran (circuit rejection, stall exhaustion)
    consumer_invoked: bool


FailureHook = Callable[[WorkerFailure], Awaitable[None]]


class StageWorker:
    """Pull-based worker pool for one queue.

    Runs ``concurrency`` slots that reserve messages, gate them through the
    queue's circuit breaker, invoke the consumer and acknowledge the outcome.
    A separate loop recovers messages whose lock was not renewed in time.

    Example:
        worker = StageWorker(transport, processor, WorkerConfig(queue="scrape"), breaker=breaker)
        await worker.start()
        ...
        await worker.close()
    """

    def __init__(
        self,
        transport: QueueTransport,
        consumer: Consumer,
        config: WorkerConfig,
        *,
        breaker: Optional[CircuitBreaker] = None,
        failure_hooks: Optional[Sequence[FailureHook]] = None,
    ):
        self.transport = transport
        self.consumer = consumer
        self.cfg = config
        self.breaker = breaker
        self.failure_hooks: List[FailureHook] = list(failure_hooks or [])
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._sleep = asyncio.sleep

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stop.is_set()

    async def _sleep_chunked(self, total_seconds: float) -> None:
        """Sleep in small chunks to react quickly to stop()."""
        remaining = max(0.0, float(total_seconds))
        step = 0.1
        while remaining > 0 and not self._stop.is_set():
            await self._sleep(min(step, remaining))
            remaining -= step

    async def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        for slot in range(max(1, int(self.cfg.concurrency))):
            self._tasks.append(asyncio.create_task(self._slot_loop(slot), name=f"{self.cfg.queue}-slot-{slot}"))
        self._tasks.append(asyncio.create_task(self._stall_loop(), name=f"{self.cfg.queue}-stall-check"))
        logger.info(f"Worker {self.cfg.worker_id} started for queue {self.cfg.queue} (concurrency={self.cfg.concurrency})")

    def stop(self) -> None:
        self._stop.set()

    async def close(self) -> None:
        """Stop taking messages and wait for in-flight executions to finish."""
        self.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Worker {self.cfg.worker_id} stopped for queue {self.cfg.queue}")

    async def run(self) -> None:
        """Run until stop() is called."""
        await self.start()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _slot_loop(self, slot: int) -> None:
        backoff = self.cfg.error_backoff_base_s
        while not self._stop.is_set():
            token = uuid.uuid4().hex
            try:
                message = await self.transport.reserve(
                    self.cfg.queue,
                    token=token,
                    lock_ms=self.cfg.lock_ms,
                    wait_s=self.cfg.poll_wait_s,
                )
            except Exception as e:
                logger.warning(f"Queue {self.cfg.queue} slot {slot}: reserve error: {e}")
                await self._sleep_chunked(backoff)
                backoff = min(backoff * 2, self.cfg.error_backoff_max_s)
                continue
            backoff = self.cfg.error_backoff_base_s
            if message is None:
                continue
            try:
                await self.process(message, token)
            except Exception as e:
                # The message stays active; stall recovery redelivers it
                logger.error(f"Queue {self.cfg.queue} slot {slot}: error while processing {message.id}: {e}")

    async def process(self, message: QueueMessage, token: str) -> None:
        """Execute one reserved message and report the outcome to the transport."""
        renew_task = asyncio.create_task(self._auto_renew(message, token))
        invoked = False
        try:
            with log_context(queue=self.cfg.queue, message_id=message.id):
                try:
                    if self.breaker is not None:
                        await self.breaker.before_call()
                    invoked = True
                    try:
                        result = await self.consumer(message)
                    except Exception:
                        await self._breaker_update("record_failure")
                        raise
                    await self._breaker_update("record_success")
                except Exception as exc:
                    await self._handle_failure(message, token, exc, invoked)
                    return
                try:
                    completed = await self.transport.complete(message, token=token, result=result)
                except Exception as e:
                    logger.error(f"Queue {self.cfg.queue}: could not acknowledge {message.id}: {e}; left for stall recovery")
                    return
                if completed:
                    logger.debug(f"Queue job completed: queue={self.cfg.queue} id={message.id}")
        finally:
            renew_task.cancel()

    async def _breaker_update(self, method: str) -> None:
        if self.breaker is None:
            return
        try:
            await getattr(self.breaker, method)()
        except Exception as e:
            logger.warning(f"Circuit breaker {self.breaker.name}: {method} failed: {e}")

    async def _handle_failure(self, message: QueueMessage, token: str, exc: BaseException, invoked: bool) -> None:
        try:
            outcome = await self.transport.fail(message, token=token, error=exc)
        except Exception as e:
            logger.error(f"Queue {self.cfg.queue}: could not record failure of {message.id}: {e}")
            return
        if not outcome.accepted:
            return
        logger.error(
            f"Queue job failed: queue={self.cfg.queue} id={message.id} "
            f"attempt={outcome.attempts_made}/{message.max_attempts} last_attempt={outcome.final} "
            f"error={type(exc).__name__}: {exc}"
        )
        await self._run_failure_hooks(
            WorkerFailure(
                message=message,
                error=exc,
                final=outcome.final,
                attempts_made=outcome.attempts_made,
                consumer_invoked=invoked,
            )
        )

    async def _run_failure_hooks(self, failure: WorkerFailure) -> None:
        for hook in self.failure_hooks:
            try:
                await hook(failure)
            except Exception as e:
                logger.error(f"Failure hook {getattr(hook, '__name__', hook)!r} raised for {failure.message.id}: {e}")

    async def _auto_renew(self, message: QueueMessage, token: str) -> None:
        interval = max(0.05, self.cfg.lock_ms / 2000.0)
        while not self._stop.is_set():
            await self._sleep(interval)
            try:
                ok = await self.transport.renew(message, token=token, lock_ms=self.cfg.lock_ms)
            except Exception as e:
                logger.debug(f"Lock renew error for {message.id}: {e}")
                return
            if not ok:
                logger.debug(f"Lock renew refused for {message.id}; stopping renew loop")
                return

    async def _stall_loop(self) -> None:
        while not self._stop.is_set():
            await self._sleep_chunked(self.cfg.stalled_interval_ms / 1000.0)
            if self._stop.is_set():
                return
            try:
                await self.check_stalled()
            except Exception as e:
                logger.warning(f"Queue {self.cfg.queue}: stall check failed: {e}")

    async def check_stalled(self) -> int:
        """Recover expired locks; returns the number of stalled messages found."""
        outcomes = await self.transport.recover_stalled(
            self.cfg.queue, max_stalled_count=self.cfg.max_stalled_count
        )
        for outcome in outcomes:
            msg = outcome.message
            if not outcome.failed:
                logger.warning(
                    f"Queue job stalled: queue={self.cfg.queue} id={msg.id} "
                    f"stalled_count={msg.stalled_count}; redelivering"
                )
                continue
            error = JobStalledError(msg.id, msg.stalled_count)
            logger.error(f"Queue job failed: queue={self.cfg.queue} id={msg.id} last_attempt=True error={error}")
            await self._run_failure_hooks(
                WorkerFailure(
                    message=msg,
                    error=error,
                    final=True,
                    attempts_made=msg.attempts_made,
                    consumer_invoked=False,
                )
            )
        return len(outcomes)
