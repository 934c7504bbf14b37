"""Tests for configuration loading, validation and redaction."""
from __future__ import annotations

import json
import logging
import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from container_mcp.config import get_config, reset_config  # noqa: E402


def test_defaults(make_config) -> None:
    config = make_config()

    assert config.runtime.preferred is None
    assert config.runtime.nerdctl_path == "nerdctl"
    assert config.runtime.nerdctl_namespace == "default"
    assert config.runtime.podman_uid == "1000"
    assert config.circuit_breaker.failure_threshold == 5
    assert config.circuit_breaker.recovery_timeout == 30.0
    assert config.cache.enabled is False
    assert config.retry.max_attempts == 1
    assert config.server.transport == "stdio"


def test_runtime_environment_variables(make_config) -> None:
    config = make_config(
        CONTAINER_RUNTIME="Podman",
        NERDCTL_PATH="/opt/bin/nerdctl",
        NERDCTL_NAMESPACE="k8s.io",
        PODMAN_HOST="unix:///run/podman.sock",
        UID="1234",
        DOCKER_HOST="tcp://10.0.0.1:2375",
    )

    assert config.runtime.preferred == "podman"
    assert config.runtime.nerdctl_path == "/opt/bin/nerdctl"
    assert config.runtime.nerdctl_namespace == "k8s.io"
    assert config.runtime.podman_host == "unix:///run/podman.sock"
    assert config.runtime.podman_uid == "1234"
    assert config.runtime.docker_host == "tcp://10.0.0.1:2375"


@pytest.mark.parametrize("value", ["auto", "", "AUTO"])
def test_auto_preference_means_none(make_config, value: str) -> None:
    assert make_config(CONTAINER_RUNTIME=value).runtime.preferred is None


def test_invalid_preference_is_ignored(make_config, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        config = make_config(CONTAINER_RUNTIME="lxc")

    assert config.runtime.preferred is None
    assert "config.invalid_preferred_runtime" in caplog.text


def test_numeric_values_are_clamped(make_config, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        config = make_config(
            MCP_CIRCUIT_BREAKER_FAILURE_THRESHOLD="0",
            MCP_RETRY_MAX_ATTEMPTS="50",
            MCP_CACHE_MAX_SIZE="-3",
        )

    assert config.circuit_breaker.failure_threshold == 1
    assert config.retry.max_attempts == 10
    assert config.cache.max_size == 1
    assert "config.value_clamped" in caplog.text


def test_unparseable_number_keeps_default(make_config) -> None:
    config = make_config(MCP_CACHE_DEFAULT_TTL="soon")
    assert config.cache.default_ttl == 60.0


def test_boolean_environment_values(make_config) -> None:
    config = make_config(MCP_CACHE_ENABLED="yes", MCP_CIRCUIT_BREAKER_ENABLED="false")
    assert config.cache.enabled is True
    assert config.circuit_breaker.enabled is False


def test_invalid_port_is_rejected(make_config) -> None:
    with pytest.raises(ValueError, match="Invalid port"):
        make_config(MCP_SERVER_PORT="70000")


def test_invalid_transport_is_rejected(make_config) -> None:
    with pytest.raises(ValueError, match="Invalid transport"):
        make_config(MCP_SERVER_TRANSPORT="websocket")


def test_yaml_file_then_environment(tmp_path: pathlib.Path, make_config) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "runtime:\n"
        "  preferred: nerdctl\n"
        "  podman_path: /usr/local/bin/podman\n"
        "cache:\n"
        "  enabled: true\n"
        "  default_ttl: 5\n",
        encoding="utf-8",
    )

    config = make_config(str(config_file), PODMAN_PATH="/env/podman")

    assert config.runtime.preferred == "nerdctl"
    assert config.runtime.podman_path == "/env/podman"
    assert config.cache.enabled is True
    assert config.cache.default_ttl == 5.0


def test_json_file(tmp_path: pathlib.Path, make_config) -> None:
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"retry": {"max_attempts": 3}}), encoding="utf-8")

    assert make_config(str(config_file)).retry.max_attempts == 3


def test_broken_file_falls_back_to_defaults(tmp_path: pathlib.Path, make_config) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("runtime: [unclosed\n", encoding="utf-8")

    config = make_config(str(config_file))
    assert config.runtime.podman_path == "podman"


def test_unknown_keys_are_ignored(tmp_path: pathlib.Path, make_config,
                                  caplog: pytest.LogCaptureFixture) -> None:
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"runtime": {"lxc_path": "/bin/lxc"}}), encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        config = make_config(str(config_file))

    assert not hasattr(config.runtime, "lxc_path")
    assert "config.unknown_key" in caplog.text


def test_daemon_addresses_are_redacted(make_config) -> None:
    config = make_config(DOCKER_HOST="tcp://secret:2375")

    redacted = config.to_dict()
    assert redacted["runtime"]["docker_host"] == "***REDACTED***"
    assert redacted["runtime"]["podman_host"] == ""
    assert config.to_dict(redact_sensitive=False)["runtime"]["docker_host"] == "tcp://secret:2375"


def test_get_config_is_a_singleton(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PODMAN_PATH", "/first/podman")
    first = get_config()
    monkeypatch.setenv("PODMAN_PATH", "/second/podman")

    assert get_config() is first
    assert get_config(force_new=True).runtime.podman_path == "/second/podman"

    reset_config()
    assert get_config() is not first

