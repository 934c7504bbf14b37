"""
Metrics collection for runtime calls.

Features:
- Thread-safe singleton MetricsManager
- Per-runtime counters (calls, successes, failures, cache hits, last error)
- Bounded response-time window (last 1000 calls)
- Prometheus export through prometheus_client (prometheus_enabled switch)

Usage:
    from container_mcp.metrics import MetricsManager

    manager = MetricsManager.get()
    manager.record_call("podman", "podman_ps", success=True, response_time=0.12)
    report = manager.get_report()

Testing:
    MetricsManager.reset_for_testing()
"""
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

log = logging.getLogger(__name__)

RESPONSE_WINDOW = 1000

CALLS_COUNTER = Counter(
    'container_mcp_calls_total',
    'Runtime operation calls',
    ['runtime', 'operation', 'result']
)
CALL_SECONDS = Histogram(
    'container_mcp_call_seconds',
    'Runtime operation latency in seconds',
    ['runtime']
)


def sanitize_metric_value(value: Any, name: str = "value") -> float:
    """Coerce to a finite, non-negative float."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        log.warning("metrics.invalid_value name=%s value=%s defaulting_to_zero", name, value)
        return 0.0
    if math.isnan(value) or math.isinf(value):
        log.warning("metrics.non_finite_value name=%s defaulting_to_zero", name)
        return 0.0
    return abs(value)


@dataclass
class RuntimeMetrics:
    name: str
    calls: int = 0
    successes: int = 0
    failures: int = 0
    cached: int = 0
    response_times: Deque[float] = field(default_factory=lambda: deque(maxlen=RESPONSE_WINDOW))
    last_error: Optional[str] = None
    last_error_time: Optional[float] = None

    def average_ms(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times) * 1000.0

    def get_stats(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "successes": self.successes,
            "failures": self.failures,
            "cached": self.cached,
            "success_rate": self.successes / self.calls if self.calls else 1.0,
            "avg_response_time_ms": round(self.average_ms(), 3),
            "last_error": self.last_error,
        }


class MetricsManager:
    """Singleton collecting call metrics for every runtime."""

    _instance: Optional['MetricsManager'] = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self.runtimes: Dict[str, RuntimeMetrics] = {}
            self.response_times: Deque[float] = deque(maxlen=RESPONSE_WINDOW)
            self.last_error: Optional[str] = None
            self.last_error_time: Optional[float] = None
            self.start_time = time.time()
            self.prometheus_enabled = True
            self._metrics_lock = threading.Lock()
            self._initialized = True
            log.info("metrics_manager.initialized")

    @classmethod
    def get(cls) -> 'MetricsManager':
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_for_testing(cls):
        with cls._lock:
            if cls._instance:
                cls._instance._initialized = False
            cls._instance = None
        log.debug("metrics_manager.reset_for_testing")

    def _runtime(self, runtime: str) -> RuntimeMetrics:
        metrics = self.runtimes.get(runtime)
        if metrics is None:
            metrics = self.runtimes[runtime] = RuntimeMetrics(runtime)
        return metrics

    def record_call(self, runtime: str, operation: str, success: bool,
                    response_time: float, cached: bool = False):
        response_time = sanitize_metric_value(response_time, "response_time")
        with self._metrics_lock:
            metrics = self._runtime(runtime)
            metrics.calls += 1
            if success:
                metrics.successes += 1
            else:
                metrics.failures += 1
            if cached:
                metrics.cached += 1
            metrics.response_times.append(response_time)
            self.response_times.append(response_time)

        if not self.prometheus_enabled:
            return
        result = "cached" if cached else ("success" if success else "failure")
        CALLS_COUNTER.labels(runtime=runtime, operation=operation, result=result).inc()
        if not cached:
            CALL_SECONDS.labels(runtime=runtime).observe(response_time)

    def record_error(self, runtime: str, error: BaseException):
        now = time.time()
        message = str(error) or error.__class__.__name__
        with self._metrics_lock:
            metrics = self._runtime(runtime)
            metrics.last_error = message
            metrics.last_error_time = now
            self.last_error = message
            self.last_error_time = now
        log.debug("metrics.error_recorded runtime=%s error=%s", runtime, message)

    def get_report(self) -> Dict[str, Any]:
        with self._metrics_lock:
            runtimes = {name: m.get_stats() for name, m in self.runtimes.items()}
            total = sum(m.calls for m in self.runtimes.values())
            successes = sum(m.successes for m in self.runtimes.values())
            cached = sum(m.cached for m in self.runtimes.values())
            avg_ms = (sum(self.response_times) / len(self.response_times) * 1000.0
                      if self.response_times else 0.0)
            return {
                "total_calls": total,
                "successful_calls": successes,
                "failed_calls": total - successes,
                "cached_calls": cached,
                "success_rate": successes / total if total else 1.0,
                "cache_hit_rate": cached / total if total else 0.0,
                "avg_response_time_ms": round(avg_ms, 3),
                "last_error": self.last_error,
                "last_error_time": self.last_error_time,
                "uptime_seconds": round(time.time() - self.start_time, 3),
                "runtimes": runtimes,
            }

    def get_prometheus_metrics(self) -> Optional[str]:
        """Prometheus exposition text, or None when export is disabled or fails."""
        if not self.prometheus_enabled:
            return None
        try:
            return generate_latest(REGISTRY).decode('utf-8')
        except Exception as e:
            log.error("prometheus.generate_metrics_error error=%s", str(e))
            return None
