"""
nerdctl runtime adapter (containerd's Docker-compatible CLI).

First choice in the FOSS-first selection order.

Configuration:
    NERDCTL_PATH: Binary to execute (default: nerdctl)
    NERDCTL_NAMESPACE: containerd namespace, passed only when not "default"
    NERDCTL_HOST: containerd address (--host)
    NERDCTL_SNAPSHOTTER: Snapshotter plugin (--snapshotter)

Nested mode mounts the containerd socket and state directory into the new
container and forces --privileged.
"""
from typing import List

from container_mcp.base_runtime import RuntimeAdapter, RuntimeKind


class NerdctlRuntime(RuntimeAdapter):
    """containerd through nerdctl."""

    kind = RuntimeKind.NERDCTL
    description = "nerdctl - containerd CLI (FOSS preferred)"
    nested_mounts = (
        "/run/containerd/containerd.sock:/run/containerd/containerd.sock",
        "/var/lib/containerd:/var/lib/containerd",
    )
    nested_forces_privileged = True

    def global_flags(self) -> List[str]:
        rt = self.config.runtime
        flags: List[str] = []
        if rt.nerdctl_namespace and rt.nerdctl_namespace != "default":
            flags.extend(["--namespace", rt.nerdctl_namespace])
        if rt.nerdctl_host:
            flags.extend(["--host", rt.nerdctl_host])
        if rt.nerdctl_snapshotter:
            flags.extend(["--snapshotter", rt.nerdctl_snapshotter])
        return flags
