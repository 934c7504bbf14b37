"""
Health checks for the container MCP server.

Features:
- Priority-weighted overall status (critical, important, informational)
- Per-check timeout and error isolation
- One informational check per runtime: connected and breaker closed is
  healthy, an open breaker is degraded, an unavailable runtime is unhealthy

Usage:
    manager = HealthCheckManager()
    manager.add_health_check(RuntimeHealthCheck(resilient))
    health = await manager.run_checks()
    print(health.to_dict())
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

from .circuit_breaker import CircuitBreakerState

log = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthCheckPriority(IntEnum):
    """
    Priority determines impact on overall health status:
    - CRITICAL (0): Failure causes UNHEALTHY status
    - IMPORTANT (1): Failure causes DEGRADED status
    - INFORMATIONAL (2): Degrades only when every informational check fails
    """
    CRITICAL = 0
    IMPORTANT = 1
    INFORMATIONAL = 2


@dataclass
class HealthCheckResult:
    name: str
    status: HealthStatus
    message: str
    priority: HealthCheckPriority = HealthCheckPriority.INFORMATIONAL
    timestamp: datetime = field(default_factory=datetime.now)
    duration: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "priority": self.priority.name,
            "timestamp": self.timestamp.isoformat(),
            "duration": round(self.duration, 3),
            "metadata": self.metadata,
        }


@dataclass
class SystemHealth:
    overall_status: HealthStatus
    checks: Dict[str, HealthCheckResult]
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.overall_status.value,
            "timestamp": self.timestamp.isoformat(),
            "checks": [result.to_dict() for result in self.checks.values()],
        }


class HealthCheck:
    """Base class for health checks with timeout and error handling."""

    def __init__(self, name: str, priority: HealthCheckPriority = HealthCheckPriority.INFORMATIONAL,
                 timeout: float = 10.0):
        self.name = name
        self.priority = priority
        self.timeout = max(1.0, timeout)

    async def check(self) -> HealthCheckResult:
        start_time = time.time()
        try:
            result = await asyncio.wait_for(self._execute_check(), timeout=self.timeout)
        except asyncio.TimeoutError:
            return HealthCheckResult(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check timed out after {self.timeout}s",
                priority=self.priority,
                duration=self.timeout,
                metadata={"error": "timeout"},
            )
        except Exception as e:
            log.error("health_check.failed name=%s error=%s", self.name, str(e))
            return HealthCheckResult(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check failed: {str(e)}",
                priority=self.priority,
                duration=time.time() - start_time,
                metadata={"error": str(e), "error_type": type(e).__name__},
            )
        result.duration = time.time() - start_time
        result.priority = self.priority
        return result

    async def _execute_check(self) -> HealthCheckResult:
        raise NotImplementedError


class RuntimeHealthCheck(HealthCheck):
    """Availability of one runtime, as seen through its resilience wrapper."""

    def __init__(self, resilient, priority: HealthCheckPriority = HealthCheckPriority.INFORMATIONAL,
                 timeout: float = 10.0):
        super().__init__(f"runtime_{resilient.name}", priority, timeout)
        self.resilient = resilient

    async def _execute_check(self) -> HealthCheckResult:
        adapter = self.resilient.adapter
        breaker = self.resilient.breaker
        reachable = await adapter.check_connection()
        metadata = {
            "runtime": adapter.name,
            "binary": adapter.binary,
            "connected": adapter.connected,
            "available": reachable.connected,
            "circuit": breaker.state.value if breaker else None,
        }

        if not reachable.connected:
            status = HealthStatus.UNHEALTHY
            message = f"{adapter.name} unavailable: {reachable.detail}"
        elif breaker is not None and breaker.state == CircuitBreakerState.OPEN:
            status = HealthStatus.DEGRADED
            message = f"{adapter.name} circuit breaker is open"
        else:
            status = HealthStatus.HEALTHY
            message = reachable.detail or f"{adapter.name} available"
        return HealthCheckResult(name=self.name, status=status, message=message, metadata=metadata)


class HealthCheckManager:
    """Runs registered checks concurrently and folds them into one status."""

    def __init__(self):
        self.health_checks: Dict[str, HealthCheck] = {}
        self.last_health: Optional[SystemHealth] = None

    def add_health_check(self, health_check: HealthCheck):
        self.health_checks[health_check.name] = health_check
        log.debug("health_check.added name=%s priority=%s",
                  health_check.name, health_check.priority.name)

    async def run_checks(self) -> SystemHealth:
        names = list(self.health_checks)
        results = await asyncio.gather(*(self.health_checks[n].check() for n in names))
        check_results = dict(zip(names, results))
        health = SystemHealth(self._calculate_overall_status(check_results), check_results)
        self.last_health = health
        log.info("health_check.completed status=%s checks=%d",
                 health.overall_status.value, len(check_results))
        return health

    def _calculate_overall_status(self, check_results: Dict[str, HealthCheckResult]) -> HealthStatus:
        by_priority = {p: [r for r in check_results.values() if r.priority == p]
                       for p in HealthCheckPriority}

        if any(r.status == HealthStatus.UNHEALTHY for r in by_priority[HealthCheckPriority.CRITICAL]):
            return HealthStatus.UNHEALTHY
        if any(r.status == HealthStatus.UNHEALTHY for r in by_priority[HealthCheckPriority.IMPORTANT]):
            return HealthStatus.DEGRADED
        if any(r.status == HealthStatus.DEGRADED for r in check_results.values()):
            return HealthStatus.DEGRADED

        info = by_priority[HealthCheckPriority.INFORMATIONAL]
        if info and all(r.status == HealthStatus.UNHEALTHY for r in info):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY
