"""
Redis-backed queue transport.

Layout per queue (``{prefix}:{queue}:...``):

- ``msg:{id}``   JSON document of the QueueMessage (its existence is the dedup guard)
- ``wait``       list of ready ids (LPUSH / claimed from the right)
- ``delayed``    zset of retry ids scored by availability time
- ``active``     zset of reserved ids scored by lock expiry
- ``completed``  zset of finished ids scored by finish time (trimmed)
- ``failed``     zset of failed ids scored by finish time (trimmed)

An id never leaves one set without entering the next in the same step: the
``wait -> active`` claim and the ``delayed -> wait`` promotion run as Lua
scripts, and the message document is updated afterwards. A claimed id whose
document was never marked active (the reserving process died in between) is
found by stall recovery and put back on ``wait``. Lock-token checks on
complete/fail are read-then-write and therefore best effort across processes.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from loguru import logger

from prodgen_Server_API.app.core.Queue.transport import (
    ACTIVE,
    COMPLETED,
    DELAYED,
    FAILED,
    WAITING,
    FailureOutcome,
    JobOptions,
    QueueMessage,
    StalledOutcome,
)
from prodgen_Server_API.app.core.Utils.time_utils import Clock, now_ms


# KEYS: wait, active  ARGV: lock expiry
# Returns nil when nothing is waiting, else {id, added}; added is 0 when the id
# is already active under another reservation.
CLAIM_SCRIPT = """
local id = redis.call("RPOP", KEYS[1])
if not id then
    return nil
end
local added = redis.call("ZADD", KEYS[2], "NX", ARGV[1], id)
return {id, added}
"""

# KEYS: delayed, wait  ARGV: now
PROMOTE_SCRIPT = """
local due = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
for _, id in ipairs(due) do
    redis.call("ZREM", KEYS[1], id)
    redis.call("LPUSH", KEYS[2], id)
end
return due
"""

# KEYS: active, target  ARGV: id, now, "list" | "zset", zset score
# Moves an expired active id to the wait list or the failed zset; returns 0 when
# the lock was renewed or released in the meantime.
RELEASE_SCRIPT = """
local score = redis.call("ZSCORE", KEYS[1], ARGV[1])
if not score or tonumber(score) > tonumber(ARGV[2]) then
    return 0
end
redis.call("ZREM", KEYS[1], ARGV[1])
if ARGV[3] == "list" then
    redis.call("RPUSH", KEYS[2], ARGV[1])
else
    redis.call("ZADD", KEYS[2], ARGV[4], ARGV[1])
end
return 1
"""


class RedisQueueTransport:
    def __init__(
        self,
        client,
        *,
        prefix: str = "pipeline",
        clock: Clock = now_ms,
        default_options: Optional[JobOptions] = None,
        poll_interval_s: float = 0.05,
    ):
        # client: redis.asyncio.Redis created with decode_responses=True
        self.client = client
        self.prefix = prefix
        self._clock = clock
        self.default_options = default_options or JobOptions()
        self._poll_interval_s = poll_interval_s
        self._claim = client.register_script(CLAIM_SCRIPT)
        self._promote = client.register_script(PROMOTE_SCRIPT)
        self._release = client.register_script(RELEASE_SCRIPT)

    def _key(self, queue: str, suffix: str) -> str:
        return f"{self.prefix}:{queue}:{suffix}"

    def _msg_key(self, queue: str, message_id: str) -> str:
        return self._key(queue, f"msg:{message_id}")

    async def _load(self, queue: str, message_id: str) -> Optional[QueueMessage]:
        raw = await self.client.get(self._msg_key(queue, message_id))
        if raw is None:
            return None
        return QueueMessage.from_dict(json.loads(raw))

    async def _save(self, message: QueueMessage) -> None:
        await self.client.set(self._msg_key(message.queue, message.id), json.dumps(message.to_dict(), default=str))

    async def enqueue(
        self,
        queue: str,
        payload: Dict[str, Any],
        *,
        dedup_id: str,
        options: Optional[JobOptions] = None,
    ) -> QueueMessage:
        now = self._clock()
        message = QueueMessage(
            id=dedup_id,
            queue=queue,
            payload=dict(payload),
            options=options or self.default_options,
            created_at=now,
            available_at=now,
        )
        created = await self.client.set(
            self._msg_key(queue, dedup_id),
            json.dumps(message.to_dict(), default=str),
            nx=True,
        )
        if not created:
            existing = await self._load(queue, dedup_id)
            if existing is not None:
                logger.debug(f"Queue {queue}: message {dedup_id} already present ({existing.state}); not enqueued again")
                return existing
            # Trimmed between SET NX and GET; treat as a fresh enqueue
            await self._save(message)
        await self.client.lpush(self._key(queue, "wait"), dedup_id)
        return message

    async def _mark_waiting(self, queue: str, message_id: str) -> None:
        message = await self._load(queue, message_id)
        if message is None or message.state != DELAYED:
            return
        message.state = WAITING
        await self._save(message)

    async def _promote_delayed(self, queue: str) -> None:
        due = await self._promote(keys=[self._key(queue, "delayed"), self._key(queue, "wait")], args=[self._clock()])
        for message_id in due or []:
            await self._mark_waiting(queue, message_id)

    async def _claim_next(self, queue: str, token: str, lock_ms: int) -> Optional[QueueMessage]:
        active_key = self._key(queue, "active")
        now = self._clock()
        claimed = await self._claim(keys=[self._key(queue, "wait"), active_key], args=[now + lock_ms])
        if not claimed:
            return None
        message_id, added = claimed[0], int(claimed[1])
        if not added:
            # Duplicate wait entry for a message another slot holds
            return None
        message = await self._load(queue, message_id)
        # A promoted message may still carry its delayed state
        if message is None or message.state not in (WAITING, DELAYED):
            await self.client.zrem(active_key, message_id)
            return None
        message.state = ACTIVE
        message.lock_token = token
        message.lock_expires_at = now + lock_ms
        message.processed_at = now
        await self._save(message)
        return message

    async def reserve(self, queue: str, *, token: str, lock_ms: int, wait_s: float = 1.0) -> Optional[QueueMessage]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, wait_s)
        while True:
            await self._promote_delayed(queue)
            message = await self._claim_next(queue, token, lock_ms)
            if message is not None:
                return message
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval_s, remaining))

    async def _owned(self, message: QueueMessage, token: Optional[str]) -> Optional[QueueMessage]:
        stored = await self._load(message.queue, message.id)
        if stored is None or stored.state != ACTIVE:
            return None
        if token is not None and stored.lock_token != token:
            return None
        return stored

    async def renew(self, message: QueueMessage, *, token: str, lock_ms: int) -> bool:
        stored = await self._owned(message, token)
        if stored is None:
            return False
        stored.lock_expires_at = self._clock() + lock_ms
        await self._save(stored)
        await self.client.zadd(self._key(message.queue, "active"), {stored.id: stored.lock_expires_at}, xx=True)
        return True

    async def _trim(self, queue: str, set_name: str, keep: int) -> None:
        key = self._key(queue, set_name)
        excess = await self.client.zcard(key) - max(0, keep)
        if excess <= 0:
            return
        removed = await self.client.zpopmin(key, excess)
        if removed:
            await self.client.delete(*[self._msg_key(queue, member) for member, _ in removed])

    async def _finish(self, stored: QueueMessage, set_name: str, keep: int) -> None:
        stored.lock_token = None
        stored.lock_expires_at = None
        stored.finished_at = self._clock()
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._msg_key(stored.queue, stored.id), json.dumps(stored.to_dict(), default=str))
            pipe.zrem(self._key(stored.queue, "active"), stored.id)
            pipe.zadd(self._key(stored.queue, set_name), {stored.id: stored.finished_at})
            await pipe.execute()
        await self._trim(stored.queue, set_name, keep)

    async def complete(self, message: QueueMessage, *, token: str, result: Any = None) -> bool:
        stored = await self._owned(message, token)
        if stored is None:
            logger.warning(f"Queue {message.queue}: lock lost for message {message.id}; completion ignored")
            return False
        stored.state = COMPLETED
        stored.return_value = result
        await self._finish(stored, "completed", stored.options.remove_on_complete)
        return True

    async def fail(self, message: QueueMessage, *, token: Optional[str], error: BaseException) -> FailureOutcome:
        stored = await self._owned(message, token)
        if stored is None:
            logger.warning(f"Queue {message.queue}: lock lost for message {message.id}; failure ignored")
            return FailureOutcome(final=False, attempts_made=message.attempts_made, accepted=False)
        stored.attempts_made += 1
        stored.failed_reason = str(error)
        if stored.attempts_made >= stored.max_attempts:
            stored.state = FAILED
            await self._finish(stored, "failed", stored.options.remove_on_fail)
            return FailureOutcome(final=True, attempts_made=stored.attempts_made)

        delay = stored.options.backoff.delay_for(stored.attempts_made)
        stored.lock_token = None
        stored.lock_expires_at = None
        stored.available_at = self._clock() + delay
        stored.state = DELAYED if delay > 0 else WAITING
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(self._msg_key(stored.queue, stored.id), json.dumps(stored.to_dict(), default=str))
            pipe.zrem(self._key(stored.queue, "active"), stored.id)
            if delay > 0:
                pipe.zadd(self._key(stored.queue, "delayed"), {stored.id: stored.available_at})
            else:
                pipe.lpush(self._key(stored.queue, "wait"), stored.id)
            await pipe.execute()
        return FailureOutcome(final=False, attempts_made=stored.attempts_made, retry_delay_ms=delay)

    async def _release_expired(self, queue: str, message_id: str, now: int, *, failed_at: Optional[int] = None) -> bool:
        if failed_at is None:
            keys = [self._key(queue, "active"), self._key(queue, "wait")]
            args = [message_id, now, "list", 0]
        else:
            keys = [self._key(queue, "active"), self._key(queue, "failed")]
            args = [message_id, now, "zset", failed_at]
        return bool(await self._release(keys=keys, args=args))

    async def recover_stalled(self, queue: str, *, max_stalled_count: int) -> List[StalledOutcome]:
        # Documents are written before the id moves, so an interrupted recovery
        # leaves the id in ``active`` for the next pass
        now = self._clock()
        expired = await self.client.zrangebyscore(self._key(queue, "active"), "-inf", now)
        outcomes: List[StalledOutcome] = []
        for message_id in expired:
            stored = await self._load(queue, message_id)
            if stored is None:
                await self.client.zrem(self._key(queue, "active"), message_id)
                continue
            if stored.state == FAILED:
                await self._release_expired(queue, message_id, now, failed_at=stored.finished_at or now)
                continue
            if stored.state in (WAITING, DELAYED):
                stored.state = WAITING
                await self._save(stored)
                if await self._release_expired(queue, message_id, now):
                    logger.warning(f"Queue {queue}: message {message_id} was claimed but never started; requeued")
                continue
            if stored.state != ACTIVE:
                continue
            stored.stalled_count += 1
            stored.lock_token = None
            stored.lock_expires_at = None
            if stored.stalled_count > max_stalled_count:
                stored.attempts_made += 1
                stored.state = FAILED
                stored.failed_reason = "job stalled more than allowable limit"
                stored.finished_at = self._clock()
                await self._save(stored)
                if await self._release_expired(queue, message_id, now, failed_at=stored.finished_at):
                    await self._trim(queue, "failed", stored.options.remove_on_fail)
                    outcomes.append(StalledOutcome(message=stored, failed=True))
            else:
                stored.state = WAITING
                await self._save(stored)
                if await self._release_expired(queue, message_id, now):
                    outcomes.append(StalledOutcome(message=stored, failed=False))
        return outcomes

    async def get(self, queue: str, message_id: str) -> Optional[QueueMessage]:
        return await self._load(queue, message_id)

    async def counts(self, queue: str) -> Dict[str, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self._key(queue, "wait"))
            pipe.zcard(self._key(queue, "delayed"))
            pipe.zcard(self._key(queue, "active"))
            pipe.zcard(self._key(queue, "completed"))
            pipe.zcard(self._key(queue, "failed"))
            waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            WAITING: int(waiting),
            DELAYED: int(delayed),
            ACTIVE: int(active),
            COMPLETED: int(completed),
            FAILED: int(failed),
        }

    async def wait_until_ready(self, queues: List[str]) -> None:
        await self.client.ping()
        logger.info(f"Redis queues ready: {', '.join(queues)}")

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        # The client is shared with the cache; its creator closes it
        logger.debug(f"Redis queue transport {self.prefix} closed")
