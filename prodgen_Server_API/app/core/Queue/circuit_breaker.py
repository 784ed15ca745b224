"""
Per-queue circuit breaker guarding stage execution.

Protects a stage's downstream dependencies (scrapers, AI providers,
marketplaces) from repeated-failure storms by short-circuiting execution
while the circuit is open.

State lives behind a `CircuitStateStore` so a deployment can keep it in
process (default, cleared on restart) or share it through the key-value
cache across worker processes.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from loguru import logger

from prodgen_Server_API.app.core.Infrastructure.kv_cache import KeyValueCache
from prodgen_Server_API.app.core.Pipeline.exceptions import CircuitOpenError
from prodgen_Server_API.app.core.Utils.time_utils import Clock, now_ms


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Circuit tripped, rejecting calls
    HALF_OPEN = "half-open"  # One trial call allowed


SUCCESS_DECAY_POLICIES = ("decrement", "halve", "reset")


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5  # Failures before opening circuit
    cooldown_ms: int = 60_000   # Time in OPEN before a half-open trial
    success_decay: str = "decrement"  # Failure healing on success while closed

    def __post_init__(self):
        if self.success_decay not in SUCCESS_DECAY_POLICIES:
            raise ValueError(f"success_decay must be one of {SUCCESS_DECAY_POLICIES}")


@dataclass
class CircuitSnapshot:
    failures: int = 0
    last_failure: Optional[int] = None
    state: CircuitState = CircuitState.CLOSED
    trial_in_flight: bool = False

    def to_json(self) -> str:
        data = asdict(self)
        data["state"] = self.state.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "CircuitSnapshot":
        data = json.loads(raw)
        return cls(
            failures=int(data.get("failures", 0)),
            last_failure=data.get("last_failure"),
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            trial_in_flight=bool(data.get("trial_in_flight", False)),
        )


class CircuitStateStore(Protocol):
    async def get(self, name: str) -> Optional[CircuitSnapshot]: ...

    async def set(self, name: str, snapshot: CircuitSnapshot) -> None: ...


class InMemoryCircuitStateStore:
    def __init__(self):
        self._states: Dict[str, CircuitSnapshot] = {}

    async def get(self, name: str) -> Optional[CircuitSnapshot]:
        snap = self._states.get(name)
        return CircuitSnapshot(**asdict(snap)) if snap else None

    async def set(self, name: str, snapshot: CircuitSnapshot) -> None:
        self._states[name] = CircuitSnapshot(**asdict(snapshot))


class KeyValueCircuitStateStore:
    """Breaker state shared through the key-value cache (e.g. Redis)."""

    def __init__(self, cache: KeyValueCache, prefix: str = "circuit:"):
        self.cache = cache
        self.prefix = prefix

    async def get(self, name: str) -> Optional[CircuitSnapshot]:
        raw = await self.cache.get(f"{self.prefix}{name}")
        return CircuitSnapshot.from_json(raw) if raw else None

    async def set(self, name: str, snapshot: CircuitSnapshot) -> None:
        await self.cache.set(f"{self.prefix}{name}", snapshot.to_json())


class CircuitBreaker:
    """
    Circuit breaker for one queue.

    - CLOSED: calls pass through; each failure increments the count and the
      circuit opens once it reaches the threshold.
    - OPEN: calls are rejected until the cool-down since the last failure elapses.
    - HALF_OPEN: exactly one trial call is admitted; success closes the circuit,
      failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        store: Optional[CircuitStateStore] = None,
        clock: Clock = now_ms,
        metrics: Any = None,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Queue name, used as the state key and in logs
            config: Circuit breaker configuration
            store: Where state lives; in-process when omitted
            clock: Millisecond clock
            metrics: Optional PipelineMetrics for state gauge and rejection counter
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.store = store or InMemoryCircuitStateStore()
        self._clock = clock
        self._metrics = metrics
        self._lock = asyncio.Lock()

    async def _load(self) -> CircuitSnapshot:
        return await self.store.get(self.name) or CircuitSnapshot()

    async def before_call(self) -> None:
        """Admit or reject one execution.

        Raises:
            CircuitOpenError: If the circuit is open or a half-open trial is in flight
        """
        async with self._lock:
            snap = await self._load()
            if snap.state == CircuitState.OPEN:
                elapsed = self._clock() - (snap.last_failure or 0)
                if elapsed < self.config.cooldown_ms:
                    self._reject(self.config.cooldown_ms - elapsed)
                self._transition_to_half_open(snap)
                snap.trial_in_flight = True
                await self.store.set(self.name, snap)
            elif snap.state == CircuitState.HALF_OPEN:
                if snap.trial_in_flight:
                    self._reject(None)
                snap.trial_in_flight = True
                await self.store.set(self.name, snap)

    def _reject(self, retry_after_ms: Optional[int]) -> None:
        self._metric("record_rejection", self.name)
        raise CircuitOpenError(self.name, retry_after_ms)

    async def record_success(self) -> None:
        """Handle successful call."""
        async with self._lock:
            snap = await self.store.get(self.name)
            if snap is None:
                return
            if snap.state == CircuitState.HALF_OPEN:
                self._transition_to_closed(snap)
            else:
                snap.failures = self._decay(snap.failures)
            await self.store.set(self.name, snap)

    async def record_failure(self) -> None:
        """Handle failed call."""
        async with self._lock:
            snap = await self._load()
            snap.failures += 1
            snap.last_failure = self._clock()
            snap.trial_in_flight = False
            if snap.failures >= self.config.failure_threshold:
                if snap.state != CircuitState.OPEN:
                    self._transition_to_open(snap)
            elif snap.state == CircuitState.HALF_OPEN:
                # A failed trial always re-opens, even after the count decayed
                self._transition_to_open(snap)
            await self.store.set(self.name, snap)

    def _decay(self, failures: int) -> int:
        policy = self.config.success_decay
        if policy == "reset":
            return 0
        if policy == "halve":
            return failures // 2
        return max(0, failures - 1)

    def _transition_to_open(self, snap: CircuitSnapshot) -> None:
        """Transition to OPEN state."""
        logger.warning(f"Circuit breaker {self.name} transitioning to OPEN after {snap.failures} failures")
        snap.state = CircuitState.OPEN
        self._metric("set_circuit_state", self.name, CircuitState.OPEN.value)

    def _transition_to_closed(self, snap: CircuitSnapshot) -> None:
        """Transition to CLOSED state."""
        logger.info(f"Circuit breaker {self.name} transitioning to CLOSED")
        snap.state = CircuitState.CLOSED
        snap.failures = 0
        snap.trial_in_flight = False
        self._metric("set_circuit_state", self.name, CircuitState.CLOSED.value)

    def _transition_to_half_open(self, snap: CircuitSnapshot) -> None:
        """Transition to HALF_OPEN state."""
        logger.info(f"Circuit breaker {self.name} transitioning to HALF_OPEN")
        snap.state = CircuitState.HALF_OPEN
        self._metric("set_circuit_state", self.name, CircuitState.HALF_OPEN.value)

    def _metric(self, method: str, *args: Any) -> None:
        if self._metrics is None:
            return
        try:
            getattr(self._metrics, method)(*args)
        except Exception as e:
            logger.debug(f"Circuit breaker {self.name}: metrics update failed: {e}")

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute a coroutine function through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open
        """
        await self.before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self.record_failure()
            raise
        await self.record_success()
        return result

    async def get_state(self) -> Dict[str, Any]:
        """Get current state."""
        snap = await self._load()
        return {
            "name": self.name,
            "state": snap.state.value,
            "failures": snap.failures,
            "last_failure": snap.last_failure,
            "trial_in_flight": snap.trial_in_flight,
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "cooldown_ms": self.config.cooldown_ms,
                "success_decay": self.config.success_decay,
            },
        }
