"""
Queue transport contract shared by the in-memory and Redis implementations.

A transport owns one named queue per stage. Messages move through
``waiting -> active -> (completed | delayed -> waiting ... | failed)``;
``delayed`` holds retries until their backoff elapses. ``attempts_made``
counts failed attempts, so the last attempt is the one where
``attempts_made + 1 >= options.attempts``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol


WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

MESSAGE_STATES = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED)


@dataclass
class BackoffPolicy:
    type: str = "exponential"
    delay_ms: int = 60_000

    def delay_for(self, attempts_made: int) -> int:
        """Delay before the next delivery after ``attempts_made`` failures."""
        if self.delay_ms <= 0 or attempts_made <= 0:
            return 0
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * (2 ** (attempts_made - 1))


@dataclass
class JobOptions:
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    timeout_ms: int = 15 * 60 * 1000
    remove_on_complete: int = 500
    remove_on_fail: int = 2000

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobOptions":
        backoff = data.get("backoff") or {}
        return cls(
            attempts=int(data.get("attempts", 3)),
            backoff=BackoffPolicy(type=backoff.get("type", "exponential"), delay_ms=int(backoff.get("delay_ms", 60_000))),
            timeout_ms=int(data.get("timeout_ms", 15 * 60 * 1000)),
            remove_on_complete=int(data.get("remove_on_complete", 500)),
            remove_on_fail=int(data.get("remove_on_fail", 2000)),
        )


@dataclass
class QueueMessage:
    id: str
    queue: str
    payload: Dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)
    state: str = WAITING
    attempts_made: int = 0
    stalled_count: int = 0
    created_at: int = 0
    available_at: int = 0
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    lock_token: Optional[str] = None
    lock_expires_at: Optional[int] = None
    failed_reason: Optional[str] = None
    return_value: Any = None

    @property
    def max_attempts(self) -> int:
        return max(1, int(self.options.attempts))

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts_made + 1 >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["options"] = self.options.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueMessage":
        values = dict(data)
        values["options"] = JobOptions.from_dict(values.get("options") or {})
        return cls(**values)


@dataclass
class FailureOutcome:
    """Result of reporting a failed attempt to the transport."""
    final: bool
    attempts_made: int
    retry_delay_ms: Optional[int] = None
    # False when the lock was lost and the report was ignored
    accepted: bool = True


@dataclass
class StalledOutcome:
    message: QueueMessage
    failed: bool


class QueueTransport(Protocol):
    async def enqueue(
        self,
        queue: str,
        payload: Dict[str, Any],
        *,
        dedup_id: str,
        options: Optional[JobOptions] = None,
    ) -> QueueMessage: ...

    async def reserve(self, queue: str, *, token: str, lock_ms: int, wait_s: float = 1.0) -> Optional[QueueMessage]: ...

    async def renew(self, message: QueueMessage, *, token: str, lock_ms: int) -> bool: ...

    async def complete(self, message: QueueMessage, *, token: str, result: Any = None) -> bool: ...

    async def fail(self, message: QueueMessage, *, token: Optional[str], error: BaseException) -> FailureOutcome: ...

    async def recover_stalled(self, queue: str, *, max_stalled_count: int) -> List[StalledOutcome]: ...

    async def get(self, queue: str, message_id: str) -> Optional[QueueMessage]: ...

    async def counts(self, queue: str) -> Dict[str, int]: ...

    async def wait_until_ready(self, queues: List[str]) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
