"""
Circuit breaker for outbound identity provider calls.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TypeVar

from .errors import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking calls due to failures
    HALF_OPEN = "half_open"  # One trial call allowed


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    failure_threshold: int = 5  # Consecutive failures before opening
    reset_timeout: float = 60.0  # Seconds before a half-open trial

    # Exceptions that pass through without counting as failures
    excluded_exceptions: tuple = (
        KeyboardInterrupt,
        SystemExit,
        asyncio.CancelledError,
    )


@dataclass
class CircuitBreakerStats:
    """Statistics for monitoring circuit breaker behavior."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    circuit_opens: int = 0
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    state_changes: list = field(default_factory=list)


class CircuitBreaker:
    """
    Circuit breaker protecting one outbound operation.

    The circuit breaker has three states:
    - CLOSED: calls pass through; consecutive failures are counted and a
      success resets the count. Reaching the threshold opens the circuit.
    - OPEN: calls fail immediately with CircuitBreakerOpenError until
      reset_timeout has elapsed since the circuit opened.
    - HALF_OPEN: exactly one trial call is let through. Success closes the
      circuit, failure opens it again with a fresh open time.

    State reads and transitions happen under an asyncio lock; the lock is
    never held while the protected call runs.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Identifier for this circuit breaker
            config: Configuration settings
            clock: Monotonic time source, replaceable in tests
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.stats = CircuitBreakerStats()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._trial_in_flight = False

    def _change_state(self, new_state: CircuitState) -> None:
        """Change circuit state and log the transition. Caller holds the lock."""
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        self.stats.state_changes.append(
            {
                "from": old_state.value,
                "to": new_state.value,
                "timestamp": self._clock(),
                "consecutive_failures": self.stats.consecutive_failures,
            }
        )
        if new_state == CircuitState.OPEN:
            self.stats.circuit_opens += 1

        logger.warning(
            f"Circuit breaker '{self.name}' state change: "
            f"{old_state.value} -> {new_state.value} "
            f"(failures: {self.stats.consecutive_failures})"
        )

    def _remaining_open_time(self) -> float:
        if self.stats.opened_at is None:
            return 0.0
        return max(0.0, self.config.reset_timeout - (self._clock() - self.stats.opened_at))

    async def _acquire_permission(self) -> bool:
        """Decide whether a call may proceed. Returns True for the half-open trial."""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self._remaining_open_time() > 0:
                    self.stats.rejected_calls += 1
                    raise CircuitBreakerOpenError(
                        f"Circuit breaker '{self.name}' is OPEN. "
                        f"Service unavailable for {self._remaining_open_time():.1f}s",
                        details={"breaker": self.name},
                    )
                self._change_state(CircuitState.HALF_OPEN)

            if self.state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self.stats.rejected_calls += 1
                    raise CircuitBreakerOpenError(
                        f"Circuit breaker '{self.name}' is testing recovery",
                        details={"breaker": self.name},
                    )
                self._trial_in_flight = True
                return True
            return False

    async def _record_success(self, trial: bool) -> None:
        async with self._lock:
            self.stats.total_calls += 1
            self.stats.successful_calls += 1
            self.stats.consecutive_failures = 0
            if trial:
                self._trial_in_flight = False
                self.stats.opened_at = None
                self._change_state(CircuitState.CLOSED)

    async def _record_failure(self, trial: bool) -> None:
        async with self._lock:
            self.stats.total_calls += 1
            self.stats.failed_calls += 1
            self.stats.consecutive_failures += 1
            if trial:
                self._trial_in_flight = False
                self.stats.opened_at = self._clock()
                self._change_state(CircuitState.OPEN)
            elif (
                self.state == CircuitState.CLOSED
                and self.stats.consecutive_failures >= self.config.failure_threshold
            ):
                self.stats.opened_at = self._clock()
                self._change_state(CircuitState.OPEN)

    async def _release_trial(self, trial: bool) -> None:
        if trial:
            async with self._lock:
                self._trial_in_flight = False

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Execute a coroutine function through the circuit breaker.

        Raises:
            CircuitBreakerOpenError: If the circuit is open or a trial is already running
            Original exception: If the call itself fails
        """
        trial = await self._acquire_permission()
        try:
            result = await func(*args, **kwargs)
        except self.config.excluded_exceptions:
            await self._release_trial(trial)
            raise
        except Exception:
            await self._record_failure(trial)
            raise
        await self._record_success(trial)
        return result

    def get_stats(self) -> dict[str, Any]:
        """Get current statistics and state."""
        return {
            "name": self.name,
            "state": self.state.value,
            "stats": {
                "total_calls": self.stats.total_calls,
                "successful_calls": self.stats.successful_calls,
                "failed_calls": self.stats.failed_calls,
                "rejected_calls": self.stats.rejected_calls,
                "consecutive_failures": self.stats.consecutive_failures,
                "circuit_opens": self.stats.circuit_opens,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "reset_timeout": self.config.reset_timeout,
            },
        }

    async def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        async with self._lock:
            self._change_state(CircuitState.CLOSED)
            self.stats = CircuitBreakerStats()
            self._trial_in_flight = False
        logger.info(f"Circuit breaker '{self.name}' manually reset")


def with_circuit_breaker(
    operation: Callable[..., Awaitable[T]],
    failure_threshold: int = 5,
    reset_timeout: float = 60.0,
    name: Optional[str] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Callable[..., Awaitable[T]]:
    """Wrap a coroutine function in its own circuit breaker.

    The breaker is reachable on the wrapper as ``wrapper.breaker``.
    """
    breaker = CircuitBreaker(
        name or getattr(operation, "__name__", "operation"),
        CircuitBreakerConfig(failure_threshold=failure_threshold, reset_timeout=reset_timeout),
        clock=clock,
    )

    async def wrapper(*args, **kwargs) -> T:
        return await breaker.call(operation, *args, **kwargs)

    wrapper.breaker = breaker  # type: ignore[attr-defined]
    return wrapper


class CircuitBreakerRegistry:
    """Owns one circuit breaker per protected operation (e.g. provider endpoint)."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str) -> CircuitBreaker:
        """Get existing or create new circuit breaker."""
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, self._config, clock=self._clock)
        return self._breakers[name]

    def get_all_stats(self) -> dict[str, Any]:
        """Get statistics for all circuit breakers."""
        return {name: breaker.get_stats() for name, breaker in self._breakers.items()}

    async def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for breaker in self._breakers.values():
            await breaker.reset()
