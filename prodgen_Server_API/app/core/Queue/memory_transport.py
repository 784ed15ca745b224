"""
In-process queue transport.

Used when no Redis URL is configured (single-instance mode) and by the test
suite. Semantics mirror the Redis transport: dedup by message id while the
message is retained, exponential retry backoff through a delayed state, lock
based stall detection and bounded retention of finished messages.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

from prodgen_Server_API.app.core.Queue.transport import (
    ACTIVE,
    COMPLETED,
    DELAYED,
    FAILED,
    MESSAGE_STATES,
    WAITING,
    FailureOutcome,
    JobOptions,
    QueueMessage,
    StalledOutcome,
)
from prodgen_Server_API.app.core.Utils.time_utils import Clock, now_ms


class InMemoryQueueTransport:
    def __init__(
        self,
        *,
        clock: Clock = now_ms,
        default_options: Optional[JobOptions] = None,
        poll_interval_s: float = 0.02,
    ):
        self._clock = clock
        self.default_options = default_options or JobOptions()
        self._poll_interval_s = poll_interval_s
        self._messages: Dict[str, Dict[str, QueueMessage]] = defaultdict(dict)
        self._waiting: Dict[str, Deque[str]] = defaultdict(deque)
        self._completed: Dict[str, Deque[str]] = defaultdict(deque)
        self._failed: Dict[str, Deque[str]] = defaultdict(deque)
        self._closed = False

    async def enqueue(
        self,
        queue: str,
        payload: Dict[str, Any],
        *,
        dedup_id: str,
        options: Optional[JobOptions] = None,
    ) -> QueueMessage:
        existing = self._messages[queue].get(dedup_id)
        if existing is not None:
            logger.debug(f"Queue {queue}: message {dedup_id} already present ({existing.state}); not enqueued again")
            return copy.deepcopy(existing)
        now = self._clock()
        message = QueueMessage(
            id=dedup_id,
            queue=queue,
            payload=copy.deepcopy(payload),
            options=copy.deepcopy(options or self.default_options),
            created_at=now,
            available_at=now,
        )
        self._messages[queue][dedup_id] = message
        self._waiting[queue].append(dedup_id)
        return copy.deepcopy(message)

    def _promote_delayed(self, queue: str) -> None:
        now = self._clock()
        due = [
            m for m in self._messages[queue].values()
            if m.state == DELAYED and m.available_at <= now
        ]
        for message in sorted(due, key=lambda m: m.available_at):
            message.state = WAITING
            self._waiting[queue].append(message.id)

    def _take(self, queue: str, token: str, lock_ms: int) -> Optional[QueueMessage]:
        self._promote_delayed(queue)
        waiting = self._waiting[queue]
        while waiting:
            message = self._messages[queue].get(waiting.popleft())
            if message is None or message.state != WAITING:
                continue
            now = self._clock()
            message.state = ACTIVE
            message.lock_token = token
            message.lock_expires_at = now + lock_ms
            message.processed_at = now
            return copy.deepcopy(message)
        return None

    async def reserve(self, queue: str, *, token: str, lock_ms: int, wait_s: float = 1.0) -> Optional[QueueMessage]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, wait_s)
        while True:
            message = self._take(queue, token, lock_ms)
            if message is not None or self._closed:
                return message
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval_s, remaining))

    def _owned(self, message: QueueMessage, token: Optional[str]) -> Optional[QueueMessage]:
        stored = self._messages[message.queue].get(message.id)
        if stored is None or stored.state != ACTIVE:
            return None
        if token is not None and stored.lock_token != token:
            return None
        return stored

    async def renew(self, message: QueueMessage, *, token: str, lock_ms: int) -> bool:
        stored = self._owned(message, token)
        if stored is None:
            return False
        stored.lock_expires_at = self._clock() + lock_ms
        return True

    def _trim(self, queue: str, finished: Deque[str], keep: int) -> None:
        while len(finished) > max(0, keep):
            self._messages[queue].pop(finished.popleft(), None)

    async def complete(self, message: QueueMessage, *, token: str, result: Any = None) -> bool:
        stored = self._owned(message, token)
        if stored is None:
            logger.warning(f"Queue {message.queue}: lock lost for message {message.id}; completion ignored")
            return False
        stored.state = COMPLETED
        stored.finished_at = self._clock()
        stored.return_value = copy.deepcopy(result)
        stored.lock_token = None
        stored.lock_expires_at = None
        self._completed[message.queue].append(stored.id)
        self._trim(message.queue, self._completed[message.queue], stored.options.remove_on_complete)
        return True

    def _move_to_failed(self, stored: QueueMessage, reason: str) -> None:
        stored.state = FAILED
        stored.failed_reason = reason
        stored.finished_at = self._clock()
        stored.lock_token = None
        stored.lock_expires_at = None
        self._failed[stored.queue].append(stored.id)
        self._trim(stored.queue, self._failed[stored.queue], stored.options.remove_on_fail)

    async def fail(self, message: QueueMessage, *, token: Optional[str], error: BaseException) -> FailureOutcome:
        stored = self._owned(message, token)
        if stored is None:
            logger.warning(f"Queue {message.queue}: lock lost for message {message.id}; failure ignored")
            return FailureOutcome(final=False, attempts_made=message.attempts_made, accepted=False)
        stored.attempts_made += 1
        if stored.attempts_made >= stored.max_attempts:
            self._move_to_failed(stored, str(error))
            return FailureOutcome(final=True, attempts_made=stored.attempts_made)
        delay = stored.options.backoff.delay_for(stored.attempts_made)
        stored.failed_reason = str(error)
        stored.lock_token = None
        stored.lock_expires_at = None
        stored.available_at = self._clock() + delay
        if delay > 0:
            stored.state = DELAYED
        else:
            stored.state = WAITING
            self._waiting[stored.queue].append(stored.id)
        return FailureOutcome(final=False, attempts_made=stored.attempts_made, retry_delay_ms=delay)

    async def recover_stalled(self, queue: str, *, max_stalled_count: int) -> List[StalledOutcome]:
        now = self._clock()
        outcomes: List[StalledOutcome] = []
        for stored in list(self._messages[queue].values()):
            if stored.state != ACTIVE or stored.lock_expires_at is None or stored.lock_expires_at > now:
                continue
            stored.stalled_count += 1
            if stored.stalled_count > max_stalled_count:
                stored.attempts_made += 1
                self._move_to_failed(stored, "job stalled more than allowable limit")
                outcomes.append(StalledOutcome(message=copy.deepcopy(stored), failed=True))
            else:
                stored.state = WAITING
                stored.lock_token = None
                stored.lock_expires_at = None
                self._waiting[queue].append(stored.id)
                outcomes.append(StalledOutcome(message=copy.deepcopy(stored), failed=False))
        return outcomes

    async def get(self, queue: str, message_id: str) -> Optional[QueueMessage]:
        stored = self._messages[queue].get(message_id)
        return copy.deepcopy(stored) if stored else None

    async def counts(self, queue: str) -> Dict[str, int]:
        self._promote_delayed(queue)
        out = {state: 0 for state in MESSAGE_STATES}
        for message in self._messages[queue].values():
            out[message.state] += 1
        return out

    async def wait_until_ready(self, queues: List[str]) -> None:
        for queue in queues:
            self._messages.setdefault(queue, {})
        logger.debug(f"In-memory queues ready: {', '.join(queues)}")

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True
