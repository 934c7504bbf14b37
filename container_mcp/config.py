"""
Configuration management for the container MCP server.

Features:
- Multi-source configuration (defaults, YAML/JSON file, environment)
- Validation with clamping and logging
- Thread-safe loading and access
- Redaction of daemon addresses for display

Configuration Priority (highest to lowest):
1. Environment variables
2. Configuration file (MCP_CONFIG_FILE)
3. Default values

Runtime-specific environment variables keep the names the CLIs' users already
know: NERDCTL_PATH, NERDCTL_NAMESPACE, NERDCTL_HOST, NERDCTL_SNAPSHOTTER,
PODMAN_PATH, PODMAN_HOST, UID, DOCKER_PATH, DOCKER_HOST and CONTAINER_RUNTIME.

Usage:
    from container_mcp.config import get_config, reset_config

    config = get_config()
    print(config.runtime.podman_path)

    # Testing
    reset_config()
    config = get_config(force_new=True)
"""
import copy
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

log = logging.getLogger(__name__)

RUNTIME_NAMES = ("nerdctl", "podman", "docker")


@dataclass
class RuntimeConfig:
    """Runtime binary locations and daemon/namespace overrides."""
    preferred: Optional[str] = None
    auto_connect: bool = True
    nerdctl_path: str = "nerdctl"
    nerdctl_namespace: str = "default"
    nerdctl_host: str = ""
    nerdctl_snapshotter: str = ""
    podman_path: str = "podman"
    podman_host: str = ""
    podman_uid: str = "1000"
    docker_path: str = "docker"
    docker_host: str = ""


@dataclass
class CircuitBreakerConfig:
    """Per-runtime circuit breaker configuration."""
    enabled: bool = True
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 3


@dataclass
class CacheConfig:
    """Response cache for read-only operations."""
    enabled: bool = False
    max_size: int = 100
    default_ttl: float = 60.0


@dataclass
class RetryConfig:
    """Retry with exponential backoff around runtime calls."""
    max_attempts: int = 1
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0


@dataclass
class MetricsConfig:
    """Metrics configuration."""
    enabled: bool = True
    prometheus_enabled: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s %(message)s"
    file_path: Optional[str] = None
    max_file_size: int = 10485760  # 10MB
    backup_count: int = 5


@dataclass
class ServerConfig:
    """Server configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    transport: str = "stdio"
    shutdown_grace_period: float = 30.0


_SECTIONS = {
    "runtime": RuntimeConfig,
    "circuit_breaker": CircuitBreakerConfig,
    "cache": CacheConfig,
    "retry": RetryConfig,
    "metrics": MetricsConfig,
    "logging": LoggingConfig,
    "server": ServerConfig,
}

_ENV_MAPPINGS = {
    # Runtime selection and binaries
    "CONTAINER_RUNTIME": ("runtime", "preferred"),
    "MCP_RUNTIME_AUTO_CONNECT": ("runtime", "auto_connect"),
    "NERDCTL_PATH": ("runtime", "nerdctl_path"),
    "NERDCTL_NAMESPACE": ("runtime", "nerdctl_namespace"),
    "NERDCTL_HOST": ("runtime", "nerdctl_host"),
    "NERDCTL_SNAPSHOTTER": ("runtime", "nerdctl_snapshotter"),
    "PODMAN_PATH": ("runtime", "podman_path"),
    "PODMAN_HOST": ("runtime", "podman_host"),
    "UID": ("runtime", "podman_uid"),
    "DOCKER_PATH": ("runtime", "docker_path"),
    "DOCKER_HOST": ("runtime", "docker_host"),

    # Circuit breaker
    "MCP_CIRCUIT_BREAKER_ENABLED": ("circuit_breaker", "enabled"),
    "MCP_CIRCUIT_BREAKER_FAILURE_THRESHOLD": ("circuit_breaker", "failure_threshold"),
    "MCP_CIRCUIT_BREAKER_RECOVERY_TIMEOUT": ("circuit_breaker", "recovery_timeout"),
    "MCP_CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS": ("circuit_breaker", "half_open_max_calls"),

    # Cache
    "MCP_CACHE_ENABLED": ("cache", "enabled"),
    "MCP_CACHE_MAX_SIZE": ("cache", "max_size"),
    "MCP_CACHE_DEFAULT_TTL": ("cache", "default_ttl"),

    # Retry
    "MCP_RETRY_MAX_ATTEMPTS": ("retry", "max_attempts"),
    "MCP_RETRY_BASE_DELAY": ("retry", "base_delay"),
    "MCP_RETRY_MAX_DELAY": ("retry", "max_delay"),
    "MCP_RETRY_MULTIPLIER": ("retry", "multiplier"),

    # Metrics
    "MCP_METRICS_ENABLED": ("metrics", "enabled"),
    "MCP_METRICS_PROMETHEUS_ENABLED": ("metrics", "prometheus_enabled"),

    # Logging
    "MCP_LOGGING_LEVEL": ("logging", "level"),
    "MCP_LOGGING_FILE_PATH": ("logging", "file_path"),
    "MCP_LOGGING_MAX_FILE_SIZE": ("logging", "max_file_size"),
    "MCP_LOGGING_BACKUP_COUNT": ("logging", "backup_count"),

    # Server
    "MCP_SERVER_HOST": ("server", "host"),
    "MCP_SERVER_PORT": ("server", "port"),
    "MCP_SERVER_TRANSPORT": ("server", "transport"),
    "MCP_SERVER_SHUTDOWN_GRACE_PERIOD": ("server", "shutdown_grace_period"),
}

_INT_FIELDS = {
    "failure_threshold", "half_open_max_calls", "max_size", "max_attempts",
    "max_file_size", "backup_count", "port",
}
_FLOAT_FIELDS = {
    "recovery_timeout", "default_ttl", "base_delay", "max_delay", "multiplier",
    "shutdown_grace_period",
}
_BOOL_FIELDS = {"enabled", "prometheus_enabled", "auto_connect"}


class ContainerMCPConfig:
    """
    Main configuration object.

    Sections are plain dataclasses reachable as attributes
    (config.runtime, config.circuit_breaker, ...).
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self._lock = threading.RLock()
        self._initialize_defaults()
        self.load_config()

    def _initialize_defaults(self):
        for section_name, section_cls in _SECTIONS.items():
            setattr(self, section_name, section_cls())

    def load_config(self):
        """Load defaults, then file, then environment; validate and apply."""
        with self._lock:
            config_data = {name: asdict(cls()) for name, cls in _SECTIONS.items()}

            if self.config_path and os.path.exists(self.config_path):
                file_data = self._load_from_file(self.config_path)
                config_data = self._deep_merge(config_data, file_data)
                log.info("config.loaded_from_file path=%s", self.config_path)

            env_data = self._load_from_environment()
            if env_data:
                config_data = self._deep_merge(config_data, env_data)
                log.info("config.loaded_from_environment keys=%d",
                         sum(len(v) for v in env_data.values()))

            self._validate_config(config_data)
            self._apply_config(config_data)
            log.debug("config.loaded_successfully sections=%d", len(config_data))

    def _load_from_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration from a JSON or YAML file; errors fall back to {}."""
        file_path = Path(config_path)
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                if file_path.suffix.lower() in (".yaml", ".yml"):
                    data = yaml.safe_load(f) or {}
                else:
                    data = json.load(f) or {}
        except yaml.YAMLError as e:
            log.error("config.yaml_parse_failed path=%s error=%s", config_path, str(e))
            return {}
        except json.JSONDecodeError as e:
            log.error("config.json_parse_failed path=%s error=%s", config_path, str(e))
            return {}
        except OSError as e:
            log.error("config.file_load_failed path=%s error=%s", config_path, str(e))
            return {}

        if not isinstance(data, dict):
            log.warning("config.file_not_mapping path=%s", config_path)
            return {}
        return data

    def _load_from_environment(self) -> Dict[str, Dict[str, Any]]:
        config: Dict[str, Dict[str, Any]] = {}

        for env_var, (section, key) in _ENV_MAPPINGS.items():
            value = os.getenv(env_var)
            if value is None:
                continue
            try:
                if key in _INT_FIELDS:
                    parsed: Any = int(value)
                elif key in _FLOAT_FIELDS:
                    parsed = float(value)
                elif key in _BOOL_FIELDS:
                    parsed = value.lower() in ("true", "1", "yes", "on")
                else:
                    parsed = value
            except (ValueError, TypeError) as e:
                log.warning("config.env_parse_failed env_var=%s value=%s error=%s",
                            env_var, value, str(e))
                continue
            config.setdefault(section, {})[key] = parsed
            log.debug("config.env_loaded env_var=%s section=%s key=%s", env_var, section, key)

        return config

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        result = dict(base)
        for key, value in override.items():
            if isinstance(result.get(key), dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _log_clamp(self, section: str, key: str, original: Union[int, float],
                   clamped: Union[int, float], min_val: Union[int, float],
                   max_val: Union[int, float]):
        if original != clamped:
            log.warning(
                "config.value_clamped section=%s key=%s original=%s clamped=%s valid_range=[%s,%s]",
                section, key, original, clamped, min_val, max_val
            )

    def _clamp(self, section: str, config: Dict, key: str, cast, min_val, max_val):
        if key not in config:
            return
        original = cast(config[key])
        config[key] = max(min_val, min(max_val, original))
        self._log_clamp(section, key, original, config[key], min_val, max_val)

    def _validate_config(self, config_data: Dict[str, Any]):
        runtime = config_data.get("runtime", {})
        preferred = runtime.get("preferred")
        if isinstance(preferred, str):
            preferred = preferred.strip().lower() or None
            if preferred == "auto":
                preferred = None
        if preferred is not None and preferred not in RUNTIME_NAMES:
            log.warning("config.invalid_preferred_runtime value=%s valid=%s using=auto",
                        preferred, RUNTIME_NAMES)
            preferred = None
        runtime["preferred"] = preferred

        cb = config_data.get("circuit_breaker", {})
        self._clamp("circuit_breaker", cb, "failure_threshold", int, 1, 100)
        self._clamp("circuit_breaker", cb, "recovery_timeout", float, 1.0, 600.0)
        self._clamp("circuit_breaker", cb, "half_open_max_calls", int, 1, 10)

        cache = config_data.get("cache", {})
        self._clamp("cache", cache, "max_size", int, 1, 10000)
        self._clamp("cache", cache, "default_ttl", float, 0.1, 3600.0)

        retry = config_data.get("retry", {})
        self._clamp("retry", retry, "max_attempts", int, 1, 10)
        self._clamp("retry", retry, "base_delay", float, 0.0, 60.0)
        self._clamp("retry", retry, "max_delay", float, 0.0, 600.0)
        self._clamp("retry", retry, "multiplier", float, 1.0, 10.0)

        logging_cfg = config_data.get("logging", {})
        if "level" in logging_cfg:
            level = str(logging_cfg["level"]).upper()
            if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
                log.warning("config.invalid_log_level level=%s using_default=INFO", level)
                level = "INFO"
            logging_cfg["level"] = level
        self._clamp("logging", logging_cfg, "max_file_size", int, 1024, 104857600)
        self._clamp("logging", logging_cfg, "backup_count", int, 0, 100)

        server = config_data.get("server", {})
        if "port" in server:
            port = int(server["port"])
            if not (1 <= port <= 65535):
                raise ValueError(f"Invalid port: {port}, must be 1-65535")
            server["port"] = port
        if "transport" in server:
            transport = str(server["transport"]).lower()
            if transport not in ("stdio", "http"):
                raise ValueError(f"Invalid transport: {transport}, must be 'stdio' or 'http'")
            server["transport"] = transport
        self._clamp("server", server, "shutdown_grace_period", float, 0.0, 300.0)

    def _apply_config(self, config_data: Dict[str, Any]):
        for section_name in _SECTIONS:
            section_obj = getattr(self, section_name)
            for key, value in config_data.get(section_name, {}).items():
                if hasattr(section_obj, key):
                    setattr(section_obj, key, value)
                else:
                    log.warning("config.unknown_key section=%s key=%s", section_name, key)

    def get_sensitive_keys(self):
        return ["runtime.nerdctl_host", "runtime.podman_host", "runtime.docker_host"]

    def redact_sensitive_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        redacted = copy.deepcopy(data)
        for key in self.get_sensitive_keys():
            section, subkey = key.split(".", 1)
            if redacted.get(section, {}).get(subkey):
                redacted[section][subkey] = "***REDACTED***"
        return redacted

    def to_dict(self, redact_sensitive: bool = True) -> Dict[str, Any]:
        config_dict = {name: asdict(getattr(self, name)) for name in _SECTIONS}
        if redact_sensitive:
            config_dict = self.redact_sensitive_data(config_dict)
        return config_dict

    def __repr__(self) -> str:
        return f"ContainerMCPConfig(path={self.config_path})"


_config_instance: Optional[ContainerMCPConfig] = None
_config_lock = threading.Lock()


def get_config(config_path: Optional[str] = None, force_new: bool = False) -> ContainerMCPConfig:
    """Get the process-wide configuration instance."""
    global _config_instance

    with _config_lock:
        if force_new or _config_instance is None:
            config_path = config_path or os.getenv("MCP_CONFIG_FILE")
            _config_instance = ContainerMCPConfig(config_path)
            log.info("config.instance_created path=%s", config_path)
        return _config_instance


def reset_config():
    """Reset configuration instance (for testing)."""
    global _config_instance
    with _config_lock:
        _config_instance = None
        log.debug("config.instance_reset")
