"""
Resilience layer wrapped around each runtime adapter.

Features:
- Circuit breaker per runtime (container_mcp.circuit_breaker)
- LRU response cache with TTL for read-only operations
- Retry with exponential backoff (tenacity)
- Call metrics (container_mcp.metrics), switchable with MCP_METRICS_ENABLED
- Diagnostics: cache stats, circuit status, cache clearing, circuit reset

Call path for ResilientRuntime.execute():
    cache lookup (read-only ops) -> breaker admission -> retry(adapter.call)
    -> metrics -> cache store (read-only) / cache invalidation (mutating)

Usage:
    resilient = ResilientRuntime(PodmanRuntime())
    reply = await resilient.execute("podman_ps", {"all": True})
"""
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Type

from tenacity import (AsyncRetrying, RetryCallState, retry_if_not_exception_type,
                      stop_after_attempt, wait_exponential)

from .circuit_breaker import CircuitBreaker
from .executor import CommandNotAllowed, ExecutionError
from .metrics import MetricsManager

log = logging.getLogger(__name__)

_MISSING = object()

NON_RETRYABLE: Tuple[Type[BaseException], ...] = (CommandNotAllowed, ValueError)


@dataclass
class _CacheEntry:
    value: Any
    expires: float
    hits: int = 0


class ResponseCache:
    """LRU cache whose entries expire after a TTL."""

    def __init__(self, max_size: int = 100, default_ttl: float = 60.0):
        self.max_size = max(1, int(max_size))
        self.default_ttl = float(default_ttl)
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        if entry.expires < time.monotonic():
            del self._entries[key]
            self.misses += 1
            return default
        entry.hits += 1
        self.hits += 1
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None):
        if key in self._entries:
            del self._entries[key]
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = _CacheEntry(value, time.monotonic() + ttl)

    def clear(self):
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }


def _log_retry(retry_state: RetryCallState):
    log.info("retry.scheduled attempt=%d delay=%.2fs error=%s",
             retry_state.attempt_number,
             retry_state.next_action.sleep if retry_state.next_action else 0.0,
             str(retry_state.outcome.exception()) if retry_state.outcome else "")


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 2.0,
    non_retryable: Tuple[Type[BaseException], ...] = NON_RETRYABLE,
) -> Any:
    """
    Await `func()` until it succeeds or `max_attempts` is reached.

    The delay before attempt n+1 is min(base_delay * multiplier**(n-1), max_delay).
    Exceptions in `non_retryable` propagate immediately. After the last attempt
    the last exception propagates unchanged.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, int(max_attempts))),
        wait=wait_exponential(multiplier=base_delay, exp_base=multiplier, max=max_delay),
        retry=retry_if_not_exception_type(non_retryable),
        before_sleep=_log_retry,
        reraise=True,
    )
    return await retrying(func)


def cache_key(operation: str, arguments: Mapping[str, Any]) -> str:
    return f"{operation}:{json.dumps(dict(arguments), sort_keys=True, default=str)}"


def _reply_succeeded(reply: Any) -> bool:
    return not (isinstance(reply, dict) and reply.get("success") is False)


class ResilientRuntime:
    """Adapter wrapper adding breaker, cache, retry and metrics."""

    def __init__(self, adapter, config=None, metrics: Optional[MetricsManager] = None):
        self.adapter = adapter
        self.name = adapter.name
        self.config = config or adapter.config
        self.metrics = metrics or MetricsManager.get()
        self.metrics_enabled = self.config.metrics.enabled

        cb_cfg = self.config.circuit_breaker
        self.breaker: Optional[CircuitBreaker] = None
        if cb_cfg.enabled:
            self.breaker = CircuitBreaker(
                failure_threshold=cb_cfg.failure_threshold,
                recovery_timeout=cb_cfg.recovery_timeout,
                half_open_max_calls=cb_cfg.half_open_max_calls,
                expected_exception=(ExecutionError,),
                ignored_exceptions=(CommandNotAllowed,),
                name=self.name,
            )

        cache_cfg = self.config.cache
        self.cache_enabled = cache_cfg.enabled
        self.cache = ResponseCache(cache_cfg.max_size, cache_cfg.default_ttl)

    async def _attempt(self, operation: str, arguments: Dict[str, Any]) -> Any:
        retry_cfg = self.config.retry
        return await retry_with_backoff(
            lambda: self.adapter.call(operation, arguments),
            max_attempts=retry_cfg.max_attempts,
            base_delay=retry_cfg.base_delay,
            max_delay=retry_cfg.max_delay,
            multiplier=retry_cfg.multiplier,
        )

    def _record(self, operation: str, success: bool, start_time: float,
                cached: bool = False, error: Optional[BaseException] = None):
        if not self.metrics_enabled:
            return
        if error is not None:
            self.metrics.record_error(self.name, error)
        self.metrics.record_call(self.name, operation, success,
                                 time.time() - start_time, cached=cached)

    async def execute(self, operation: str, arguments: Optional[Mapping[str, Any]] = None) -> Any:
        op = self.adapter.get_operation(operation)
        arguments = dict(arguments or {})
        start_time = time.time()

        cacheable = self.cache_enabled and op.read_only
        key = cache_key(operation, arguments) if cacheable else ""
        if cacheable:
            cached = self.cache.get(key, _MISSING)
            if cached is not _MISSING:
                self._record(operation, True, start_time, cached=True)
                log.debug("resilience.cache_hit runtime=%s operation=%s", self.name, operation)
                return cached

        try:
            if self.breaker is not None:
                reply = await self.breaker.call(self._attempt, operation, arguments)
            else:
                reply = await self._attempt(operation, arguments)
        except Exception as e:
            self._record(operation, False, start_time, error=e)
            raise

        succeeded = _reply_succeeded(reply)
        self._record(operation, succeeded, start_time)
        if succeeded:
            if cacheable:
                self.cache.set(key, reply)
            elif not op.read_only and len(self.cache):
                self.cache.clear()
                log.debug("resilience.cache_invalidated runtime=%s operation=%s",
                          self.name, operation)
        return reply

    def circuit_status(self) -> Dict[str, Any]:
        if self.breaker is None:
            return {"state": "disabled"}
        return self.breaker.get_status()

    async def reset_circuit(self):
        if self.breaker is not None:
            await self.breaker.force_close()
        log.info("resilience.circuit_reset runtime=%s", self.name)


def cache_stats(runtimes: Mapping[str, ResilientRuntime]) -> Dict[str, Any]:
    return {
        name: {**r.cache.get_stats(), "enabled": r.cache_enabled}
        for name, r in runtimes.items()
    }


def circuit_status(runtimes: Mapping[str, ResilientRuntime]) -> Dict[str, Any]:
    return {name: r.circuit_status() for name, r in runtimes.items()}


def clear_cache(runtimes: Mapping[str, ResilientRuntime], runtime: Optional[str] = None) -> Dict[str, Any]:
    """Clear one runtime's cache when it is known, otherwise all of them."""
    if runtime and runtime in runtimes:
        runtimes[runtime].cache.clear()
        return {"success": True, "cleared": runtime}
    for r in runtimes.values():
        r.cache.clear()
    return {"success": True, "cleared": "all"}


async def reset_circuit(runtimes: Mapping[str, ResilientRuntime], runtime: Optional[str]) -> Dict[str, Any]:
    target = runtimes.get(runtime) if runtime else None
    if target is None:
        return {"success": False, "message": f"Unknown runtime: {runtime}"}
    await target.reset_circuit()
    return {"success": True, "runtime": runtime, "state": "closed"}
