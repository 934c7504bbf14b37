"""
Circuit breaker guarding calls into one container runtime.

Features:
- Async-first design, state changes serialized by an asyncio.Lock
- CLOSED -> OPEN after `failure_threshold` consecutive failures
- OPEN -> HALF_OPEN once `recovery_timeout` has elapsed
- HALF_OPEN -> CLOSED after `half_open_max_calls` successes, any failure re-opens
- Exceptions outside `expected_exception`, or listed in `ignored_exceptions`,
  pass through without counting as failures
- Prometheus state gauge, call and transition counters

Usage:
    from container_mcp.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

    cb = CircuitBreaker(failure_threshold=5, recovery_timeout=30.0, name="podman")

    try:
        result = await cb.call(runtime.call, "podman_ps", {})
    except CircuitBreakerOpenError as e:
        print(f"Circuit open, retry after {e.retry_after}s")

Testing:
    await cb.force_open()
    await cb.force_close()
    stats = cb.get_stats()
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Type

from prometheus_client import Counter, Gauge

log = logging.getLogger(__name__)

CB_STATE_GAUGE = Gauge(
    'container_mcp_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=open, 2=half_open)',
    ['name']
)
CB_CALLS_COUNTER = Counter(
    'container_mcp_circuit_breaker_calls_total',
    'Total circuit breaker calls',
    ['name', 'result']
)
CB_STATE_TRANSITIONS = Counter(
    'container_mcp_circuit_breaker_transitions_total',
    'Circuit breaker state transitions',
    ['name', 'from_state', 'to_state']
)


class CircuitBreakerOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 state: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.state = state


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_VALUES = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.OPEN: 1,
    CircuitBreakerState.HALF_OPEN: 2,
}


@dataclass
class StateTransition:
    timestamp: datetime
    from_state: CircuitBreakerState
    to_state: CircuitBreakerState
    reason: str


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None


class CircuitBreaker:
    """Async circuit breaker; one instance per runtime."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_max_calls: int = 3,
        expected_exception: Tuple[Type[BaseException], ...] = (Exception,),
        ignored_exceptions: Tuple[Type[BaseException], ...] = (),
        name: str = "default",
    ):
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_timeout = max(0.0, float(recovery_timeout))
        self.half_open_max_calls = max(1, int(half_open_max_calls))
        self.expected_exception = expected_exception
        self.ignored_exceptions = ignored_exceptions
        self.name = name

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._last_failure_time = 0.0
        self._lock = asyncio.Lock()
        self._state_history: Deque[StateTransition] = deque(maxlen=100)
        self.stats = CircuitBreakerStats()

        CB_STATE_GAUGE.labels(name=self.name).set(_STATE_VALUES[self._state])
        log.debug("circuit_breaker.created name=%s threshold=%d timeout=%.1fs",
                  self.name, self.failure_threshold, self.recovery_timeout)

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _transition(self, to_state: CircuitBreakerState, reason: str):
        """Change state; caller holds the lock."""
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        self._state_history.append(StateTransition(datetime.now(), from_state, to_state, reason))
        self.stats.state_changes += 1
        CB_STATE_GAUGE.labels(name=self.name).set(_STATE_VALUES[to_state])
        CB_STATE_TRANSITIONS.labels(
            name=self.name, from_state=from_state.value, to_state=to_state.value
        ).inc()
        log.info("circuit_breaker.transition name=%s from=%s to=%s reason=%s",
                 self.name, from_state.value, to_state.value, reason)

    def _retry_after(self) -> float:
        elapsed = time.time() - self._last_failure_time
        return round(max(0.0, self.recovery_timeout - elapsed), 2)

    async def _admit(self):
        async with self._lock:
            if self._state == CircuitBreakerState.OPEN:
                if time.time() - self._last_failure_time >= self.recovery_timeout:
                    self._transition(CircuitBreakerState.HALF_OPEN, "recovery_timeout_elapsed")
                    self._success_count = 0
                    self._half_open_calls = 0
                else:
                    self._reject("open")

            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    self._reject("half_open")
                self._half_open_calls += 1

    def _reject(self, state: str):
        self.stats.rejected_calls += 1
        CB_CALLS_COUNTER.labels(name=self.name, result="rejected").inc()
        raise CircuitBreakerOpenError(
            f"Circuit breaker open for {self.name}",
            retry_after=self._retry_after(),
            state=state,
        )

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Run `func` through the breaker; rejected calls raise CircuitBreakerOpenError."""
        await self._admit()
        self.stats.total_calls += 1

        try:
            result = await func(*args, **kwargs)
        except self.ignored_exceptions:
            await self._release()
            raise
        except self.expected_exception:
            await self._on_failure()
            raise
        except BaseException:
            await self._release()
            raise

        await self._on_success()
        return result

    async def _release(self):
        async with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)

    async def _on_success(self):
        async with self._lock:
            self.stats.successful_calls += 1
            self.stats.last_success_time = time.time()
            CB_CALLS_COUNTER.labels(name=self.name, result="success").inc()

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.half_open_max_calls:
                    self._transition(CircuitBreakerState.CLOSED, "success_threshold_reached")
                    self._failure_count = 0
                    self._half_open_calls = 0
            else:
                self._failure_count = 0

    async def _on_failure(self):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()
            self.stats.failed_calls += 1
            self.stats.last_failure_time = self._last_failure_time
            CB_CALLS_COUNTER.labels(name=self.name, result="failure").inc()

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._transition(CircuitBreakerState.OPEN, "recovery_attempt_failed")
            elif self._failure_count >= self.failure_threshold:
                self._transition(CircuitBreakerState.OPEN, "failure_threshold_exceeded")
                log.warning("circuit_breaker.open name=%s failures=%d timeout=%.1fs",
                            self.name, self._failure_count, self.recovery_timeout)

    async def force_open(self):
        async with self._lock:
            self._failure_count = self.failure_threshold
            self._last_failure_time = time.time()
            self._transition(CircuitBreakerState.OPEN, "forced_open")

    async def force_close(self):
        """Reset to CLOSED with all counters cleared."""
        async with self._lock:
            self._failure_count = 0
            self._success_count = 0
            self._half_open_calls = 0
            self._transition(CircuitBreakerState.CLOSED, "forced_close")

    def get_state_history(self, count: int = 10) -> List[Dict[str, Any]]:
        return [
            {
                "timestamp": t.timestamp.isoformat(),
                "from_state": t.from_state.value,
                "to_state": t.to_state.value,
                "reason": t.reason,
            }
            for t in list(self._state_history)[-count:]
        ]

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "failures": self._failure_count,
            "last_failure": self._last_failure_time or None,
            "threshold": self.failure_threshold,
            "retry_after": self._retry_after() if self._state == CircuitBreakerState.OPEN else 0.0,
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            **self.get_status(),
            "recovery_timeout": self.recovery_timeout,
            "half_open_max_calls": self.half_open_max_calls,
            "stats": {
                "total_calls": self.stats.total_calls,
                "successful_calls": self.stats.successful_calls,
                "failed_calls": self.stats.failed_calls,
                "rejected_calls": self.stats.rejected_calls,
                "state_changes": self.stats.state_changes,
            },
            "recent_transitions": self.get_state_history(5),
        }
