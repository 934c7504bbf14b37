"""Shared pytest fixtures: a recording executor and isolated configuration."""
from __future__ import annotations

import pathlib
import sys
from typing import Callable, List, Optional, Sequence, Tuple

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from container_mcp import config as config_module  # noqa: E402
from container_mcp.config import ContainerMCPConfig  # noqa: E402
from container_mcp.executor import CommandResult  # noqa: E402
from container_mcp.metrics import MetricsManager  # noqa: E402


class FakeExecutor:
    """Records every spawn and answers from prefix-matched canned results."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, List[str]]] = []
        self._rules: List[tuple] = []
        self.default = CommandResult(stdout="", stderr="", returncode=0)

    def respond(self, *prefix: str, stdout: str = "", stderr: str = "", returncode: int = 0,
                binary: Optional[str] = None, raises: Optional[BaseException] = None) -> None:
        """Later rules win over earlier ones."""
        result = CommandResult(stdout=stdout, stderr=stderr, returncode=returncode)
        self._rules.insert(0, (binary, list(prefix), result, raises))

    async def execute(self, binary: str, argv: Sequence[str]) -> CommandResult:
        argv = list(argv)
        self.calls.append((binary, argv))
        for rule_binary, prefix, result, raises in self._rules:
            if rule_binary not in (None, binary):
                continue
            if argv[:len(prefix)] != prefix:
                continue
            if raises is not None:
                raise raises
            return result
        return self.default

    @property
    def last_argv(self) -> List[str]:
        return self.calls[-1][1]

    def argvs(self, binary: Optional[str] = None) -> List[List[str]]:
        return [argv for b, argv in self.calls if binary in (None, b)]


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch):
    """Strip runtime/config variables so host settings never leak into tests."""
    for env_var in list(config_module._ENV_MAPPINGS) + ["MCP_CONFIG_FILE", "LOG_LEVEL", "LOG_FORMAT"]:
        monkeypatch.delenv(env_var, raising=False)
    config_module.reset_config()
    MetricsManager.reset_for_testing()
    yield
    config_module.reset_config()
    MetricsManager.reset_for_testing()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_config(monkeypatch: pytest.MonkeyPatch) -> Callable[..., ContainerMCPConfig]:
    """Build a config from environment overrides, e.g. make_config(PODMAN_HOST="tcp://x")."""

    def _factory(config_path: Optional[str] = None, **env: str) -> ContainerMCPConfig:
        for key, value in env.items():
            monkeypatch.setenv(key, str(value))
        return ContainerMCPConfig(config_path)

    return _factory


@pytest.fixture
def make_registry(make_config, fake_executor):
    from container_mcp.registry import RuntimeRegistry

    def _factory(**env: str) -> RuntimeRegistry:
        return RuntimeRegistry(make_config(**env), executor=fake_executor)

    return _factory
