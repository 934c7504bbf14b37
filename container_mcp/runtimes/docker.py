"""
docker runtime adapter.

Last resort in the selection order; connection failures suggest switching to
nerdctl or podman.

Configuration:
    DOCKER_PATH: Binary to execute (default: docker)
    DOCKER_HOST: Daemon address (-H)
"""
from typing import List

from container_mcp.base_runtime import RuntimeAdapter, RuntimeKind


class DockerRuntime(RuntimeAdapter):
    kind = RuntimeKind.DOCKER
    description = "Docker CLI - Fallback (prefer nerdctl or podman)"
    nested_mounts = ("/var/run/docker.sock:/var/run/docker.sock",)
    nested_forces_privileged = True

    def global_flags(self) -> List[str]:
        host = self.config.runtime.docker_host
        return ["-H", host] if host else []
