"""
podman runtime adapter (daemonless, rootless-first engine).

Configuration:
    PODMAN_PATH: Binary to execute (default: podman)
    PODMAN_HOST: Remote service URL (--url)
    UID: User whose rootless socket is mounted in nested mode (default: 1000)

Differences from the other backends:
- "pod" is whitelisted and pod_ls/pod_create/pod_rm are exposed
- run accepts "userns"
- nested mode mounts the rootless user socket, points CONTAINER_HOST at it,
  disables SELinux labelling and keeps the caller's uid unless privileged or
  an explicit userns is requested. It does not force --privileged.
"""
from typing import List, Optional

from container_mcp.base_runtime import RuntimeAdapter, RuntimeKind
from container_mcp.executor import COMMON_COMMANDS
from container_mcp.operations import POD_OPERATIONS


class PodmanRuntime(RuntimeAdapter):
    """Podman, rootless by default."""

    kind = RuntimeKind.PODMAN
    description = "Podman - Daemonless container engine (FOSS preferred)"
    allowed_commands = COMMON_COMMANDS | {"pod"}
    supports_userns = True
    extra_operations = POD_OPERATIONS

    def global_flags(self) -> List[str]:
        host = self.config.runtime.podman_host
        return ["--url", host] if host else []

    @property
    def socket_path(self) -> str:
        return f"/run/user/{self.config.runtime.podman_uid}/podman/podman.sock"

    def nested_args(self, privileged: bool, userns: Optional[str]) -> List[str]:
        sock = self.socket_path
        args = [
            "-v", f"{sock}:{sock}",
            "-e", f"CONTAINER_HOST=unix://{sock}",
            "--security-opt", "label=disable",
        ]
        if not privileged and not userns:
            args.extend(["--userns", "keep-id"])
        return args
