"""
Runtime registry and selector.

Owns exactly one adapter per runtime kind, wraps each in a ResilientRuntime,
and routes operations:

- dispatch("podman_ps", args): qualified call, lazily connects podman
- invoke("ps", args, runtime=None): unqualified call, routed to the explicit
  runtime, else the preferred one, else the first connected in priority
  order (nerdctl > podman > docker), connecting everything as a last resort

Connecting is serialized per runtime kind, so a slow version query on one runtime
never holds up another. Preference changes and disconnect_all share one
registry-wide asyncio.Lock. Read paths (resolve, list_runtimes) take no lock.
"""
import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Type

from .base_runtime import RUNTIME_PRIORITY, RuntimeAdapter, RuntimeKind
from .config import get_config
from .executor import ExecutionError, ProcessExecutor, RuntimeNotFound
from .health import HealthCheckManager, RuntimeHealthCheck
from .metrics import MetricsManager
from .resilience import ResilientRuntime
from .runtimes.docker import DockerRuntime
from .runtimes.nerdctl import NerdctlRuntime
from .runtimes.podman import PodmanRuntime

log = logging.getLogger(__name__)

ADAPTER_CLASSES: Dict[RuntimeKind, Type[RuntimeAdapter]] = {
    RuntimeKind.NERDCTL: NerdctlRuntime,
    RuntimeKind.PODMAN: PodmanRuntime,
    RuntimeKind.DOCKER: DockerRuntime,
}

DOCKER_SUGGESTION = "Consider using nerdctl or podman instead"


def parse_runtime(name: Any) -> Optional[RuntimeKind]:
    """Map a runtime name to its kind; None/"auto"/"" mean no preference."""
    if name is None or isinstance(name, RuntimeKind):
        return name
    value = str(name).strip().lower()
    if value in ("", "auto"):
        return None
    try:
        return RuntimeKind(value)
    except ValueError:
        valid = ", ".join(k.value for k in RUNTIME_PRIORITY)
        raise ValueError(f"Unknown runtime: {name}. Valid: {valid}, auto")


class RuntimeRegistry:
    """One adapter per runtime kind plus selection and routing."""

    def __init__(self, config=None, executor: Optional[ProcessExecutor] = None,
                 metrics: Optional[MetricsManager] = None):
        self.config = config or get_config()
        self.metrics = metrics or MetricsManager.get()
        self.metrics.prometheus_enabled = self.config.metrics.prometheus_enabled
        self._lock = asyncio.Lock()
        self._connect_locks: Dict[RuntimeKind, asyncio.Lock] = {
            kind: asyncio.Lock() for kind in RUNTIME_PRIORITY
        }

        self.adapters: Dict[RuntimeKind, RuntimeAdapter] = {
            kind: ADAPTER_CLASSES[kind](self.config, executor) for kind in RUNTIME_PRIORITY
        }
        self.resilient: Dict[RuntimeKind, ResilientRuntime] = {
            kind: ResilientRuntime(adapter, self.config, self.metrics)
            for kind, adapter in self.adapters.items()
        }
        self._owners: Dict[str, RuntimeKind] = {
            op_name: kind
            for kind, adapter in self.adapters.items()
            for op_name in adapter.operations
        }

        self.preferred: Optional[RuntimeKind] = None
        try:
            self.preferred = parse_runtime(self.config.runtime.preferred)
        except ValueError as e:
            log.warning("registry.invalid_preference error=%s", str(e))

        self.health_manager = HealthCheckManager()
        for resilient in self.resilient.values():
            self.health_manager.add_health_check(RuntimeHealthCheck(resilient))

        log.info("registry.initialized runtimes=%s operations=%d preferred=%s",
                 [k.value for k in self.adapters], len(self._owners),
                 self.preferred.value if self.preferred else "auto")

    # Selection

    def connected_kinds(self) -> List[RuntimeKind]:
        return [kind for kind in RUNTIME_PRIORITY if self.adapters[kind].connected]

    def resolve(self) -> Optional[RuntimeKind]:
        """Preferred runtime if set (connected or not), else first connected."""
        if self.preferred is not None:
            return self.preferred
        connected = self.connected_kinds()
        return connected[0] if connected else None

    async def set_preference(self, name: Any) -> Optional[RuntimeKind]:
        kind = parse_runtime(name)
        async with self._lock:
            self.preferred = kind
        log.info("registry.preference_set runtime=%s", kind.value if kind else "auto")
        return kind

    async def detect_all(self) -> Dict[str, bool]:
        """Check every runtime concurrently without touching connection state."""
        kinds = list(RUNTIME_PRIORITY)
        results = await asyncio.gather(*(self.adapters[k].is_connected() for k in kinds))
        return {k.value: ok for k, ok in zip(kinds, results)}

    # Connection management

    async def connect(self, kind: RuntimeKind):
        """Connect one runtime; concurrent callers for the same kind share one attempt."""
        adapter = self.adapters[kind]
        if adapter.connected:
            return
        async with self._connect_locks[kind]:
            if not adapter.connected:
                await adapter.connect()

    async def connect_all(self) -> Dict[str, List[Any]]:
        """Try every runtime; one failure never stops the others."""
        report: Dict[str, List[Any]] = {"connected": [], "failed": [], "skipped": []}
        for kind in RUNTIME_PRIORITY:
            adapter = self.adapters[kind]
            if adapter.connected:
                report["skipped"].append({"runtime": kind.value, "reason": "already connected"})
                continue
            try:
                await self.connect(kind)
            except ExecutionError as e:
                log.info("registry.connect_failed runtime=%s error=%s", kind.value, str(e))
                report["failed"].append({"runtime": kind.value, "error": str(e)})
            else:
                report["connected"].append({"runtime": kind.value, "description": adapter.description})
        return report

    async def disconnect_all(self):
        async with self._lock:
            for adapter in self.adapters.values():
                await adapter.disconnect()

    async def ensure_connected(self, kind: RuntimeKind) -> RuntimeAdapter:
        adapter = self.adapters[kind]
        try:
            await self.connect(kind)
        except RuntimeNotFound as e:
            suggestion = DOCKER_SUGGESTION if kind == RuntimeKind.DOCKER else e.suggestion
            raise RuntimeNotFound(kind.value, str(e), suggestion) from e
        except ExecutionError as e:
            suggestion = DOCKER_SUGGESTION if kind == RuntimeKind.DOCKER else None
            raise RuntimeNotFound(kind.value, f"{kind.value} not available: {e}", suggestion) from e
        return adapter

    # Routing

    def owner_of(self, operation: str) -> Optional[RuntimeKind]:
        return self._owners.get(operation)

    async def dispatch(self, operation: str, arguments: Optional[Mapping[str, Any]] = None) -> Any:
        kind = self.owner_of(operation)
        if kind is None:
            raise ValueError(f"Unknown operation: {operation}")
        await self.ensure_connected(kind)
        return await self.resilient[kind].execute(operation, arguments)

    async def invoke(self, action: str, arguments: Optional[Mapping[str, Any]] = None,
                     runtime: Any = None) -> Any:
        kind = parse_runtime(runtime) or self.resolve()
        if kind is None:
            await self.connect_all()
            kind = self.resolve()
        if kind is None:
            raise RuntimeNotFound(
                "auto", "No container runtime available",
                "Install nerdctl or podman, or point NERDCTL_PATH/PODMAN_PATH/DOCKER_PATH at a binary",
            )
        operation = f"{kind.value}_{action}"
        if operation not in self.adapters[kind].operations:
            raise ValueError(f"Operation '{action}' is not supported by {kind.value}")
        return await self.dispatch(operation, arguments)

    # Meta operations

    async def list_runtimes(self) -> Dict[str, Any]:
        available = await self.detect_all()
        current = self.resolve()
        return {
            "runtimes": [
                {
                    "name": kind.value,
                    "description": self.adapters[kind].description,
                    "binary": self.adapters[kind].binary,
                    "available": available[kind.value],
                    "connected": self.adapters[kind].connected,
                }
                for kind in RUNTIME_PRIORITY
            ],
            "preferred": self.preferred.value if self.preferred else None,
            "current": current.value if current else None,
            "priority": [k.value for k in RUNTIME_PRIORITY],
        }

    def describe_operations(self, runtime: Any = None) -> Dict[str, Any]:
        kind = parse_runtime(runtime)
        kinds = [kind] if kind else list(RUNTIME_PRIORITY)
        return {
            k.value: {
                "description": self.adapters[k].description,
                "operations": {name: op.describe() for name, op in self.adapters[k].operations.items()},
            }
            for k in kinds
        }

    async def collect_versions(self) -> Dict[str, Any]:
        """Version document of every connected runtime."""
        versions: Dict[str, Any] = {}
        for kind in RUNTIME_PRIORITY:
            adapter = self.adapters[kind]
            if not adapter.connected:
                versions[kind.value] = "not connected"
                continue
            try:
                versions[kind.value] = await adapter.call(f"{kind.value}_version")
            except ExecutionError as e:
                log.debug("registry.version_failed runtime=%s error=%s", kind.value, str(e))
                versions[kind.value] = "connected but version unavailable"
        return versions

    def resilient_by_name(self) -> Dict[str, ResilientRuntime]:
        return {kind.value: r for kind, r in self.resilient.items()}
