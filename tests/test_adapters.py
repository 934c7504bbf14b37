"""Tests for the runtime adapters: argv building, nested recipes and reply shapes."""
from __future__ import annotations

import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from container_mcp.base_runtime import ParamSpec, RuntimeKind  # noqa: E402
from container_mcp.executor import CommandNotAllowed, ExecutionFailed, RuntimeNotFound  # noqa: E402
from container_mcp.operations import SHARED_OPERATIONS, env_args, json_pairs, split_csv  # noqa: E402
from container_mcp.runtimes.docker import DockerRuntime  # noqa: E402
from container_mcp.runtimes.nerdctl import NerdctlRuntime  # noqa: E402
from container_mcp.runtimes.podman import PodmanRuntime  # noqa: E402

PODMAN_SOCK = "/run/user/1000/podman/podman.sock"


@pytest.fixture
def podman(make_config, fake_executor) -> PodmanRuntime:
    return PodmanRuntime(make_config(), fake_executor)


@pytest.fixture
def nerdctl(make_config, fake_executor) -> NerdctlRuntime:
    return NerdctlRuntime(make_config(), fake_executor)


@pytest.fixture
def docker(make_config, fake_executor) -> DockerRuntime:
    return DockerRuntime(make_config(), fake_executor)


# Operation tables

def test_operation_names_are_prefixed(podman: PodmanRuntime, docker: DockerRuntime) -> None:
    assert "podman_run" in podman.operations
    assert "docker_compose_up" in docker.operations
    assert all(name.startswith("podman_") for name in podman.operations)
    assert len(docker.operations) == len(SHARED_OPERATIONS)


def test_pod_operations_only_on_podman(podman: PodmanRuntime, nerdctl: NerdctlRuntime) -> None:
    assert {"podman_pod_ls", "podman_pod_create", "podman_pod_rm"} <= set(podman.operations)
    assert not any("pod_" in name for name in nerdctl.operations)


def test_userns_parameter_only_on_podman(podman: PodmanRuntime, docker: DockerRuntime) -> None:
    assert "userns" in podman.get_operation("podman_run").input_schema()["properties"]
    assert "userns" not in docker.get_operation("docker_run").input_schema()["properties"]


def test_operations_table_is_read_only(podman: PodmanRuntime) -> None:
    with pytest.raises(TypeError):
        podman.operations["podman_evil"] = None


def test_read_only_flags(podman: PodmanRuntime) -> None:
    assert podman.get_operation("podman_ps").read_only
    assert podman.get_operation("podman_inspect").read_only
    assert not podman.get_operation("podman_run").read_only
    assert not podman.get_operation("podman_system_prune").read_only


def test_param_spec_rejects_unknown_types() -> None:
    with pytest.raises(ValueError):
        ParamSpec("x", "array", "not supported")


def test_unknown_operation(podman: PodmanRuntime) -> None:
    with pytest.raises(ValueError, match="Unknown operation: docker_ps"):
        podman.get_operation("docker_ps")


@pytest.mark.asyncio
async def test_missing_required_parameter_spawns_nothing(podman: PodmanRuntime, fake_executor) -> None:
    with pytest.raises(ValueError, match="Missing required parameter 'image' for podman_run"):
        await podman.call("podman_run", {})
    assert fake_executor.calls == []


# exec / whitelist / global flags

@pytest.mark.asyncio
async def test_exec_rejects_non_whitelisted_subcommand(docker: DockerRuntime, fake_executor) -> None:
    with pytest.raises(CommandNotAllowed):
        await docker.exec("pod", ["ls"])
    with pytest.raises(CommandNotAllowed):
        await docker.exec("sh", ["-c", "id"])
    assert fake_executor.calls == []


@pytest.mark.asyncio
async def test_exec_sanitizes_every_argument(podman: PodmanRuntime, fake_executor) -> None:
    await podman.exec("logs", ["web; rm -rf /", "$(id)"])
    assert fake_executor.calls == [("podman", ["logs", "web rm -rf /", "id"])]


@pytest.mark.asyncio
async def test_binary_comes_from_config(make_config, fake_executor) -> None:
    runtime = DockerRuntime(make_config(DOCKER_PATH="/usr/local/bin/docker"), fake_executor)
    await runtime.exec("ps")
    assert fake_executor.calls[0][0] == "/usr/local/bin/docker"


@pytest.mark.asyncio
async def test_nerdctl_global_flags(make_config, fake_executor) -> None:
    runtime = NerdctlRuntime(
        make_config(NERDCTL_NAMESPACE="k8s.io", NERDCTL_HOST="/run/k3s/containerd.sock",
                    NERDCTL_SNAPSHOTTER="stargz"),
        fake_executor,
    )
    await runtime.exec("ps")
    assert fake_executor.last_argv == [
        "--namespace", "k8s.io",
        "--host", "/run/k3s/containerd.sock",
        "--snapshotter", "stargz",
        "ps",
    ]


@pytest.mark.asyncio
async def test_nerdctl_default_namespace_is_not_passed(nerdctl: NerdctlRuntime, fake_executor) -> None:
    await nerdctl.exec("ps")
    assert fake_executor.last_argv == ["ps"]


@pytest.mark.asyncio
async def test_podman_and_docker_host_flags(make_config, fake_executor) -> None:
    config = make_config(PODMAN_HOST="tcp://podman:8888", DOCKER_HOST="tcp://docker:2375")
    await PodmanRuntime(config, fake_executor).exec("ps")
    await DockerRuntime(config, fake_executor).exec("ps")
    assert fake_executor.argvs("podman") == [["--url", "tcp://podman:8888", "ps"]]
    assert fake_executor.argvs("docker") == [["-H", "tcp://docker:2375", "ps"]]


# Connection

@pytest.mark.asyncio
async def test_connect_is_idempotent(podman: PodmanRuntime, fake_executor) -> None:
    await podman.connect()
    await podman.connect()

    assert podman.connected
    assert fake_executor.calls == [("podman", ["version"])]


@pytest.mark.asyncio
async def test_connect_failure(podman: PodmanRuntime, fake_executor) -> None:
    fake_executor.respond("version", returncode=1, stderr="cannot connect to socket\n")
    with pytest.raises(RuntimeNotFound, match="podman not available: cannot connect to socket"):
        await podman.connect()
    assert not podman.connected


@pytest.mark.asyncio
async def test_disconnect(podman: PodmanRuntime) -> None:
    await podman.connect()
    await podman.disconnect()
    assert not podman.connected


@pytest.mark.asyncio
async def test_check_connection_leaves_state_alone(docker: DockerRuntime, fake_executor) -> None:
    fake_executor.respond("version", stdout="Docker version 24.0.7\nmore\n")
    reachable = await docker.check_connection()

    assert reachable.connected
    assert reachable.detail == "Docker version 24.0.7"
    assert not docker.connected


@pytest.mark.asyncio
async def test_is_connected_with_missing_binary(docker: DockerRuntime, fake_executor) -> None:
    fake_executor.respond("version", raises=RuntimeNotFound("docker", "Command not found: docker"))
    assert await docker.is_connected() is False


# run

@pytest.mark.asyncio
async def test_run_argv_order(podman: PodmanRuntime, fake_executor) -> None:
    fake_executor.respond("run", stdout="abc123\n")
    reply = await podman.call("podman_run", {
        "image": "nginx:alpine",
        "name": "web",
        "network": "frontend",
        "ports": "8080:80, 8443:443",
        "env": '{"A":"1","B":2}',
        "volumes": "/srv:/usr/share/nginx/html",
        "security_opt": "no-new-privileges",
        "command": "nginx -g daemon off",
    })

    assert fake_executor.last_argv == [
        "run", "-d", "--name", "web", "--network", "frontend",
        "--security-opt", "no-new-privileges",
        "-p", "8080:80", "-p", "8443:443",
        "-e", "A=1", "-e", "B=2",
        "-v", "/srv:/usr/share/nginx/html",
        "nginx:alpine", "nginx", "-g", "daemon", "off",
    ]
    assert reply == {"containerId": "abc123", "nested": False, "privileged": False, "success": True}


@pytest.mark.asyncio
async def test_run_foreground_privileged(docker: DockerRuntime, fake_executor) -> None:
    await docker.call("docker_run", {
        "image": "alpine", "detach": False, "privileged": "true", "cgroupns": "host",
    })
    assert fake_executor.last_argv == ["run", "--privileged", "--cgroupns", "host", "alpine"]


@pytest.mark.asyncio
async def test_run_failure_is_data(docker: DockerRuntime, fake_executor) -> None:
    fake_executor.respond("run", returncode=125, stderr="image not found")
    reply = await docker.call("docker_run", {"image": "nope"})
    assert reply["success"] is False
    assert reply["error"] == "image not found"
    assert reply["containerId"] == ""


@pytest.mark.asyncio
async def test_run_malformed_env_is_passed_through(docker: DockerRuntime, fake_executor) -> None:
    await docker.call("docker_run", {"image": "alpine", "env": "FOO=bar"})
    assert fake_executor.last_argv == ["run", "-d", "-e", "FOO=bar", "alpine"]


@pytest.mark.asyncio
async def test_nested_nerdctl(nerdctl: NerdctlRuntime, fake_executor) -> None:
    reply = await nerdctl.call("nerdctl_run", {"image": "nerdctl-dev", "nested": True})

    assert fake_executor.last_argv == [
        "run", "-d",
        "-v", "/run/containerd/containerd.sock:/run/containerd/containerd.sock",
        "-v", "/var/lib/containerd:/var/lib/containerd",
        "--privileged",
        "nerdctl-dev",
    ]
    assert reply["nested"] is True
    assert reply["privileged"] is True


@pytest.mark.asyncio
async def test_nested_docker_does_not_repeat_privileged(docker: DockerRuntime, fake_executor) -> None:
    await docker.call("docker_run", {"image": "dind", "nested": True, "privileged": True})
    assert fake_executor.last_argv == [
        "run", "-d", "--privileged",
        "-v", "/var/run/docker.sock:/var/run/docker.sock",
        "dind",
    ]
    assert fake_executor.last_argv.count("--privileged") == 1


@pytest.mark.asyncio
async def test_nested_podman_rootless(podman: PodmanRuntime, fake_executor) -> None:
    reply = await podman.call("podman_run", {"image": "quay.io/podman/stable", "nested": True})

    assert fake_executor.last_argv == [
        "run", "-d",
        "-v", f"{PODMAN_SOCK}:{PODMAN_SOCK}",
        "-e", f"CONTAINER_HOST=unix://{PODMAN_SOCK}",
        "--security-opt", "label=disable",
        "--userns", "keep-id",
        "quay.io/podman/stable",
    ]
    assert reply["privileged"] is False


@pytest.mark.asyncio
async def test_nested_podman_explicit_userns(podman: PodmanRuntime, fake_executor) -> None:
    await podman.call("podman_run", {"image": "img", "nested": True, "userns": "auto"})
    argv = fake_executor.last_argv

    assert argv[:4] == ["run", "-d", "--userns", "auto"]
    assert "keep-id" not in argv


@pytest.mark.asyncio
async def test_nested_podman_privileged_skips_keep_id(podman: PodmanRuntime, fake_executor) -> None:
    await podman.call("podman_run", {"image": "img", "nested": True, "privileged": True})
    assert "keep-id" not in fake_executor.last_argv


@pytest.mark.asyncio
async def test_nested_podman_uses_configured_uid(make_config, fake_executor) -> None:
    runtime = PodmanRuntime(make_config(UID="4242"), fake_executor)
    await runtime.call("podman_run", {"image": "img", "nested": True})
    assert "/run/user/4242/podman/podman.sock:/run/user/4242/podman/podman.sock" in fake_executor.last_argv


@pytest.mark.asyncio
async def test_userns_ignored_outside_podman(docker: DockerRuntime, fake_executor) -> None:
    await docker.call("docker_run", {"image": "img", "userns": "keep-id"})
    assert "--userns" not in fake_executor.last_argv


# Lifecycle and listings

@pytest.mark.asyncio
async def test_ps_listing(podman: PodmanRuntime, fake_executor) -> None:
    fake_executor.respond("ps", stdout='[{"Id":"a"}]')
    reply = await podman.call("podman_ps", {"all": True})

    assert fake_executor.last_argv == ["ps", "--format", "json", "-a"]
    assert reply == {"containers": [{"Id": "a"}], "success": True}


@pytest.mark.asyncio
async def test_ps_listing_with_failure_keeps_data(nerdctl: NerdctlRuntime, fake_executor) -> None:
    fake_executor.respond("ps", returncode=1, stderr="namespace missing")
    reply = await nerdctl.call("nerdctl_ps", {})
    assert reply == {"containers": [], "success": False, "error": "namespace missing"}


@pytest.mark.asyncio
async def test_stop_splits_and_trims_targets(docker: DockerRuntime, fake_executor) -> None:
    reply = await docker.call("docker_stop", {"containers": "web, db,,cache ", "time": 5.0})

    assert fake_executor.last_argv == ["stop", "-t", "5", "web", "db", "cache"]
    assert reply == {"stopped": ["web", "db", "cache"], "success": True}


@pytest.mark.asyncio
async def test_rm_flags(podman: PodmanRuntime, fake_executor) -> None:
    reply = await podman.call("podman_rm", {"containers": "a", "force": True, "volumes": True})
    assert fake_executor.last_argv == ["rm", "-f", "-v", "a"]
    assert reply["removed"] == ["a"]


@pytest.mark.asyncio
async def test_kill_with_signal(docker: DockerRuntime, fake_executor) -> None:
    reply = await docker.call("docker_kill", {"containers": "a,b", "signal": "TERM"})
    assert fake_executor.last_argv == ["kill", "-s", "TERM", "a", "b"]
    assert reply["killed"] == ["a", "b"]


@pytest.mark.asyncio
async def test_logs_never_forwards_follow(podman: PodmanRuntime, fake_executor) -> None:
    fake_executor.respond("logs", stdout="line1\nline2\n")
    reply = await podman.call("podman_logs", {
        "container": "web", "tail": 50, "timestamps": True, "follow": True,
    })

    assert fake_executor.last_argv == ["logs", "--tail", "50", "-t", "web"]
    assert reply == {"logs": "line1\nline2\n", "success": True}


@pytest.mark.asyncio
async def test_exec_in_container(docker: DockerRuntime, fake_executor) -> None:
    fake_executor.respond("exec", stdout="root\n")
    reply = await docker.call("docker_exec", {
        "container": "web", "command": "id -un", "user": "root", "workdir": "/tmp",
    })

    assert fake_executor.last_argv == ["exec", "-u", "root", "-w", "/tmp", "web", "id", "-un"]
    assert reply["output"] == "root\n"


@pytest.mark.asyncio
async def test_inspect_returns_document(podman: PodmanRuntime, fake_executor) -> None:
    fake_executor.respond("inspect", stdout='[{"Id":"abc","State":{"Running":true}}]')
    reply = await podman.call("podman_inspect", {"target": "abc"})
    assert reply == [{"Id": "abc", "State": {"Running": True}}]


@pytest.mark.asyncio
async def test_inspect_failure_raises(podman: PodmanRuntime, fake_executor) -> None:
    fake_executor.respond("inspect", returncode=125, stderr="no such object: zzz\n")
    with pytest.raises(ExecutionFailed, match="no such object: zzz"):
        await podman.call("podman_inspect", {"target": "zzz"})


# Images

@pytest.mark.asyncio
async def test_build_with_build_args(docker: DockerRuntime, fake_executor) -> None:
    reply = await docker.call("docker_build", {
        "tag": "app:1", "file": "Containerfile", "no_cache": True,
        "build_args": '{"VERSION":"1.2","DEBUG":false}',
    })

    assert fake_executor.last_argv == [
        "build", "-f", "Containerfile", "-t", "app:1", "--no-cache",
        "--build-arg", "VERSION=1.2", "--build-arg", "DEBUG=false", ".",
    ]
    assert reply["tag"] == "app:1"


@pytest.mark.asyncio
async def test_build_ignores_malformed_build_args(docker: DockerRuntime, fake_executor) -> None:
    await docker.call("docker_build", {"context": "./app", "build_args": "VERSION=1"})
    assert fake_executor.last_argv == ["build", "./app"]


@pytest.mark.asyncio
async def test_pull_with_platform(nerdctl: NerdctlRuntime, fake_executor) -> None:
    reply = await nerdctl.call("nerdctl_pull", {"image": "alpine:3", "platform": "linux/arm64"})
    assert fake_executor.last_argv == ["pull", "--platform", "linux/arm64", "alpine:3"]
    assert reply["image"] == "alpine:3"


@pytest.mark.asyncio
async def test_save_and_load(podman: PodmanRuntime, fake_executor) -> None:
    await podman.call("podman_save", {"images": "a:1,b:2", "output": "/tmp/images.tar"})
    assert fake_executor.last_argv == ["save", "-o", "/tmp/images.tar", "a:1", "b:2"]

    await podman.call("podman_load", {"input": "/tmp/images.tar"})
    assert fake_executor.last_argv == ["load", "-i", "/tmp/images.tar"]


# Networks, volumes, pods, compose

@pytest.mark.asyncio
async def test_network_create(docker: DockerRuntime, fake_executor) -> None:
    reply = await docker.call("docker_network_create", {
        "name": "backend", "driver": "bridge", "subnet": "10.10.0.0/24",
    })
    assert fake_executor.last_argv == [
        "network", "create", "-d", "bridge", "--subnet", "10.10.0.0/24", "backend",
    ]
    assert reply == {"name": "backend", "success": True}


@pytest.mark.asyncio
async def test_volume_rm_force(nerdctl: NerdctlRuntime, fake_executor) -> None:
    await nerdctl.call("nerdctl_volume_rm", {"volumes": "v1,v2", "force": True})
    assert fake_executor.last_argv == ["volume", "rm", "-f", "v1", "v2"]


@pytest.mark.asyncio
async def test_network_inspect_failure_raises(docker: DockerRuntime, fake_executor) -> None:
    fake_executor.respond("network", "inspect", returncode=1, stderr="network missing not found")
    with pytest.raises(ExecutionFailed):
        await docker.call("docker_network_inspect", {"network": "missing"})


@pytest.mark.asyncio
async def test_pod_create(podman: PodmanRuntime, fake_executor) -> None:
    fake_executor.respond("pod", "create", stdout="f00d\n")
    reply = await podman.call("podman_pod_create", {"name": "stack", "ports": "8080:80"})

    assert fake_executor.last_argv == ["pod", "create", "--name", "stack", "-p", "8080:80"]
    assert reply == {"name": "stack", "podId": "f00d", "success": True}


@pytest.mark.asyncio
async def test_compose_up_defaults(podman: PodmanRuntime, fake_executor) -> None:
    await podman.call("podman_compose_up", {"file": "stack.yaml", "build": True})
    assert fake_executor.last_argv == ["compose", "-f", "stack.yaml", "up", "-d", "--build"]


@pytest.mark.asyncio
async def test_compose_ps_and_logs(docker: DockerRuntime, fake_executor) -> None:
    fake_executor.respond("compose", stdout='{"Service":"web"}\n{"Service":"db"}\n')
    reply = await docker.call("docker_compose_ps", {})
    assert fake_executor.last_argv == ["compose", "ps", "--format", "json"]
    assert reply["services"] == [{"Service": "web"}, {"Service": "db"}]

    await docker.call("docker_compose_logs", {"service": "web", "tail": 10})
    assert fake_executor.last_argv == ["compose", "logs", "--tail", "10", "web"]


# System

@pytest.mark.asyncio
async def test_version_json(nerdctl: NerdctlRuntime, fake_executor) -> None:
    fake_executor.respond("version", "--format", stdout='{"Client":{"Version":"1.7.0"}}')
    assert await nerdctl.call("nerdctl_version") == {"Client": {"Version": "1.7.0"}}


@pytest.mark.asyncio
async def test_version_falls_back_to_text(docker: DockerRuntime, fake_executor) -> None:
    fake_executor.respond("version", stdout="Docker version 20.10\n")
    fake_executor.respond("version", "--format", returncode=1, stderr="unknown flag")
    reply = await docker.call("docker_version")

    assert reply == {"version": "Docker version 20.10\n"}
    assert fake_executor.argvs() == [["version", "--format", "json"], ["version"]]


@pytest.mark.asyncio
async def test_version_reports_failure_when_both_attempts_fail(podman: PodmanRuntime,
                                                               fake_executor) -> None:
    fake_executor.respond("version", returncode=1, stderr="cannot connect")
    with pytest.raises(ExecutionFailed, match="cannot connect"):
        await podman.call("podman_version", {})
    assert fake_executor.argvs() == [["version", "--format", "json"], ["version"]]


@pytest.mark.asyncio
async def test_stats_defaults_to_single_sample(podman: PodmanRuntime, fake_executor) -> None:
    await podman.call("podman_stats", {"containers": "web"})
    assert fake_executor.last_argv == ["stats", "--format", "json", "--no-stream", "web"]


@pytest.mark.asyncio
async def test_system_prune_forces_by_default(docker: DockerRuntime, fake_executor) -> None:
    await docker.call("docker_system_prune", {"all": True, "volumes": True})
    assert fake_executor.last_argv == ["system", "prune", "-a", "--volumes", "-f"]


@pytest.mark.asyncio
async def test_info_is_a_document(podman: PodmanRuntime, fake_executor) -> None:
    fake_executor.respond("info", stdout='{"host":{"arch":"amd64"}}')
    assert await podman.call("podman_info") == {"host": {"arch": "amd64"}}


# Helpers

def test_split_csv() -> None:
    assert split_csv(" a, b ,,c ") == ["a", "b", "c"]
    assert split_csv("") == []
    assert split_csv(None) == []


def test_json_pairs_and_env_args() -> None:
    assert json_pairs({"A": 1, "B": True, "C": None}) == ["A=1", "B=true", "C=null"]
    assert json_pairs("[1, 2]") is None
    assert json_pairs("not json") is None
    assert env_args('{"X":"y"}') == ["-e", "X=y"]
    assert env_args("X=y") == ["-e", "X=y"]


def test_runtime_kind_values() -> None:
    assert [k.value for k in RuntimeKind] == ["nerdctl", "podman", "docker"]
