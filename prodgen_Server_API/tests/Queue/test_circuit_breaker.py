"""
Unit tests for the per-queue circuit breaker.

Tests state transitions, the single half-open trial and success decay.
"""

import pytest

from prodgen_Server_API.app.core.Pipeline.exceptions import CircuitOpenError
from prodgen_Server_API.app.core.Queue.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    InMemoryCircuitStateStore,
    KeyValueCircuitStateStore,
)

pytestmark = pytest.mark.unit


def _breaker(clock, metrics=None, store=None, **config):
    return CircuitBreaker("scrape", CircuitBreakerConfig(**config), store=store, clock=clock, metrics=metrics)


async def _fail(breaker, times):
    for _ in range(times):
        await breaker.before_call()
        await breaker.record_failure()


class TestCircuitBreakerConfig:
    def test_defaults(self):
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.cooldown_ms == 60_000
        assert config.success_decay == "decrement"

    def test_invalid_decay(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(success_decay="forget")


class TestCircuitBreakerStates:
    @pytest.mark.asyncio
    async def test_opens_on_threshold(self, clock, metrics):
        breaker = _breaker(clock, metrics)
        await _fail(breaker, 4)
        assert (await breaker.get_state())["state"] == "closed"

        await _fail(breaker, 1)
        assert (await breaker.get_state())["state"] == "open"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.before_call()
        assert exc_info.value.retry_after_ms == 60_000
        assert metrics.registry.get_sample_value("pipeline_circuit_state", {"queue": "scrape"}) == 1
        assert metrics.registry.get_sample_value("pipeline_circuit_rejections_total", {"queue": "scrape"}) == 1

    @pytest.mark.asyncio
    async def test_rejection_does_not_count_as_failure(self, clock):
        breaker = _breaker(clock)
        await _fail(breaker, 5)
        for _ in range(3):
            with pytest.raises(CircuitOpenError):
                await breaker.before_call()
        assert (await breaker.get_state())["failures"] == 5

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self, clock):
        breaker = _breaker(clock)
        await _fail(breaker, 5)

        clock.advance(60_000)
        await breaker.before_call()
        assert (await breaker.get_state())["state"] == "half-open"
        with pytest.raises(CircuitOpenError):
            await breaker.before_call()

    @pytest.mark.asyncio
    async def test_trial_success_closes(self, clock, metrics):
        breaker = _breaker(clock, metrics)
        await _fail(breaker, 5)
        clock.advance(60_000)

        await breaker.before_call()
        await breaker.record_success()

        state = await breaker.get_state()
        assert state["state"] == "closed"
        assert state["failures"] == 0
        await breaker.before_call()
        assert metrics.registry.get_sample_value("pipeline_circuit_state", {"queue": "scrape"}) == 0

    @pytest.mark.asyncio
    async def test_trial_failure_reopens(self, clock):
        breaker = _breaker(clock)
        await _fail(breaker, 5)
        clock.advance(60_000)

        await breaker.before_call()
        await breaker.record_failure()

        assert (await breaker.get_state())["state"] == "open"
        with pytest.raises(CircuitOpenError):
            await breaker.before_call()
        # Cool-down restarts from the failed trial
        clock.advance(59_999)
        with pytest.raises(CircuitOpenError):
            await breaker.before_call()
        clock.advance(1)
        await breaker.before_call()

    @pytest.mark.asyncio
    async def test_call_wrapper(self, clock):
        breaker = _breaker(clock, failure_threshold=1)

        async def ok():
            return 7

        async def boom():
            raise RuntimeError("down")

        assert await breaker.call(ok) == 7
        with pytest.raises(RuntimeError):
            await breaker.call(boom)
        with pytest.raises(CircuitOpenError):
            await breaker.call(ok)


class TestSuccessDecay:
    @pytest.mark.asyncio
    async def test_decrement_is_default(self, clock):
        breaker = _breaker(clock)
        await _fail(breaker, 4)
        await breaker.record_success()
        assert (await breaker.get_state())["failures"] == 3

    @pytest.mark.asyncio
    async def test_interleaved_successes_delay_opening(self, clock):
        breaker = _breaker(clock)
        for _ in range(4):
            await _fail(breaker, 2)
            await breaker.record_success()
        # 2-1+2-1+2-1 = 3 then +2 = 5 on the fourth round
        assert (await breaker.get_state())["state"] == "open"

    @pytest.mark.asyncio
    async def test_halve(self, clock):
        breaker = _breaker(clock, success_decay="halve")
        await _fail(breaker, 4)
        await breaker.record_success()
        assert (await breaker.get_state())["failures"] == 2

    @pytest.mark.asyncio
    async def test_reset(self, clock):
        breaker = _breaker(clock, success_decay="reset")
        await _fail(breaker, 4)
        await breaker.record_success()
        assert (await breaker.get_state())["failures"] == 0

    @pytest.mark.asyncio
    async def test_success_without_state_creates_nothing(self, clock):
        store = InMemoryCircuitStateStore()
        breaker = _breaker(clock, store=store)
        await breaker.record_success()
        assert await store.get("scrape") is None


class TestSharedState:
    @pytest.mark.asyncio
    async def test_state_shared_through_cache(self, clock, cache):
        store_a = KeyValueCircuitStateStore(cache)
        store_b = KeyValueCircuitStateStore(cache)
        worker_a = _breaker(clock, store=store_a, failure_threshold=2)
        worker_b = _breaker(clock, store=store_b, failure_threshold=2)

        await _fail(worker_a, 2)

        with pytest.raises(CircuitOpenError):
            await worker_b.before_call()
        assert (await worker_b.get_state())["state"] == CircuitState.OPEN.value
        assert await cache.get("circuit:scrape") is not None
