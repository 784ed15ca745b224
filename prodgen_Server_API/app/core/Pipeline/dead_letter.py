"""
Dead-letter store for messages that exhausted their delivery attempts.

Entries live in the key-value cache under ``dlq:{queue}:{job_id}`` with a
fixed TTL (30 days by default). Writing is fire-and-forget: a failed write is
logged and swallowed so it never masks the original failure.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from prodgen_Server_API.app.core.config import THIRTY_DAYS_SECONDS
from prodgen_Server_API.app.core.Infrastructure.kv_cache import KeyValueCache
from prodgen_Server_API.app.core.Pipeline.status import normalize_error
from prodgen_Server_API.app.core.Queue.transport import QueueMessage
from prodgen_Server_API.app.core.Queue.worker import WorkerFailure
from prodgen_Server_API.app.core.Utils.time_utils import Clock, ms_to_datetime, now_ms


DLQ_PREFIX = "dlq"


@dataclass
class DeadLetterEntry:
    queue_name: str
    job_id: str
    message_id: str
    payload: Dict[str, Any]
    error: Dict[str, Any]
    attempts: int
    failed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeadLetterEntry":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


class DeadLetterStore:
    def __init__(
        self,
        cache: KeyValueCache,
        *,
        ttl_seconds: int = THIRTY_DAYS_SECONDS,
        include_stack: bool = True,
        metrics: Any = None,
        clock: Clock = now_ms,
    ):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.include_stack = include_stack
        self._metrics = metrics
        self._clock = clock

    @staticmethod
    def key(queue_name: str, job_id: str) -> str:
        return f"{DLQ_PREFIX}:{queue_name}:{job_id}"

    async def push(self, message: QueueMessage, error: BaseException, attempts: int) -> Optional[DeadLetterEntry]:
        """Persist a dead-letter entry; returns None when the write failed."""
        job_id = str(message.payload.get("jobId") or message.id)
        entry = DeadLetterEntry(
            queue_name=message.queue,
            job_id=job_id,
            message_id=message.id,
            payload=message.payload,
            error=normalize_error(error, include_stack=self.include_stack),
            attempts=attempts,
            failed_at=ms_to_datetime(self._clock()).isoformat(),
        )
        try:
            await self.cache.set(
                self.key(entry.queue_name, job_id),
                json.dumps(entry.to_dict(), default=str),
                ttl_seconds=self.ttl_seconds,
            )
        except Exception as e:
            logger.error(f"Dead-letter write failed for {entry.queue_name}:{job_id}: {e}")
            return None
        if self._metrics is not None:
            try:
                self._metrics.record_dead_letter(entry.queue_name)
            except Exception as e:
                logger.debug(f"Dead-letter metric update failed: {e}")
        logger.warning(f"Dead-letter entry written: queue={entry.queue_name} job_id={job_id} attempts={attempts}")
        return entry

    async def get(self, queue_name: str, job_id: str) -> Optional[DeadLetterEntry]:
        raw = await self.cache.get(self.key(queue_name, job_id))
        return DeadLetterEntry.from_dict(json.loads(raw)) if raw else None

    async def list(self, queue_name: str) -> List[DeadLetterEntry]:
        entries: List[DeadLetterEntry] = []
        for key in await self.cache.keys(f"{DLQ_PREFIX}:{queue_name}:"):
            raw = await self.cache.get(key)
            if raw:
                entries.append(DeadLetterEntry.from_dict(json.loads(raw)))
        entries.sort(key=lambda e: e.failed_at, reverse=True)
        return entries

    async def on_worker_failure(self, failure: WorkerFailure) -> None:
        """Worker failure hook: archive the message once its attempts are exhausted."""
        if not failure.final:
            return
        await self.push(failure.message, failure.error, failure.attempts_made)
