"""
Tests for circuit breaker implementation.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from sso_web_app.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    with_circuit_breaker,
)
from sso_web_app.errors import CircuitBreakerOpenError, ErrorKind, classify


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def make_breaker(clock, threshold=2, reset=30.0):
    return CircuitBreaker(
        "test",
        CircuitBreakerConfig(failure_threshold=threshold, reset_timeout=reset),
        clock=clock,
    )


async def failing_func():
    raise ConnectionError("Test failure")


async def success_func():
    return "success"


class TestCircuitBreakerConfig:
    """Test circuit breaker configuration"""

    def test_default_config(self):
        """Test default configuration values"""
        config = CircuitBreakerConfig()

        assert config.failure_threshold == 5
        assert config.reset_timeout == 60.0


class TestCircuitBreakerStates:
    """Test circuit breaker state transitions"""

    @pytest.mark.asyncio
    async def test_initial_state_is_closed(self):
        """Test that circuit starts in closed state"""
        breaker = CircuitBreaker("test")
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_threshold_opens_and_rejects_without_calling(self, clock):
        """Two failures open the breaker; the third call never reaches the operation"""
        breaker = make_breaker(clock)
        operation = AsyncMock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(operation)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(operation)
        assert operation.await_count == 2
        assert breaker.stats.rejected_calls == 1

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, clock):
        """Test circuit stays closed when failures are not consecutive"""
        breaker = make_breaker(clock, threshold=3)

        for _ in range(4):
            with pytest.raises(ConnectionError):
                await breaker.call(failing_func)
            await breaker.call(success_func)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_half_open_trial_after_reset_timeout(self, clock):
        breaker = make_breaker(clock)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing_func)

        clock.advance(29.9)
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(success_func)

        clock.advance(0.2)
        assert await breaker.call(success_func) == "success"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_failed_trial_reopens_with_fresh_open_time(self, clock):
        breaker = make_breaker(clock)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing_func)

        clock.advance(31)
        with pytest.raises(ConnectionError):
            await breaker.call(failing_func)

        assert breaker.state == CircuitState.OPEN
        assert breaker.stats.opened_at == clock.now
        clock.advance(10)
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(success_func)

    @pytest.mark.asyncio
    async def test_half_open_allows_exactly_one_trial(self, clock):
        """Concurrent callers during half-open: one trial runs, the rest are rejected"""
        breaker = make_breaker(clock)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing_func)
        clock.advance(31)

        release = asyncio.Event()
        calls = 0

        async def slow_success():
            nonlocal calls
            calls += 1
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.call(slow_success))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(slow_success)

        release.set()
        assert await trial == "ok"
        assert calls == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancellation_does_not_count_as_failure(self, clock):
        breaker = make_breaker(clock, threshold=1)

        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await breaker.call(cancelled)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.failed_calls == 0

    @pytest.mark.asyncio
    async def test_manual_reset(self, clock):
        breaker = make_breaker(clock, threshold=1)
        with pytest.raises(ConnectionError):
            await breaker.call(failing_func)

        await breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(success_func) == "success"

    def test_open_error_classified_as_network(self):
        assert classify(CircuitBreakerOpenError("open")) == ErrorKind.NETWORK


class TestWithCircuitBreaker:
    """Test the wrapping helper"""

    @pytest.mark.asyncio
    async def test_wrapped_callable(self, clock):
        operation = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])
        wrapped = with_circuit_breaker(operation, failure_threshold=2, reset_timeout=5, clock=clock)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await wrapped()
        with pytest.raises(CircuitBreakerOpenError):
            await wrapped()

        clock.advance(5)
        assert await wrapped() == "ok"
        assert operation.await_count == 3
        assert wrapped.breaker.state == CircuitState.CLOSED


class TestCircuitBreakerRegistry:
    """Test the per-endpoint breaker registry"""

    def test_get_or_create_returns_same_instance(self):
        registry = CircuitBreakerRegistry()
        assert registry.get_or_create("github:token") is registry.get_or_create("github:token")
        assert registry.get_or_create("github:token") is not registry.get_or_create("github:profile")

    def test_registries_are_independent(self):
        assert CircuitBreakerRegistry().get_or_create("x") is not CircuitBreakerRegistry().get_or_create("x")

    @pytest.mark.asyncio
    async def test_stats_snapshot(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
        breaker = registry.get_or_create("github:token")
        with pytest.raises(ConnectionError):
            await breaker.call(failing_func)

        stats = registry.get_all_stats()

        assert stats["github:token"]["state"] == "open"
        assert stats["github:token"]["stats"]["failed_calls"] == 1

        await registry.reset_all()
        assert breaker.state == CircuitState.CLOSED
