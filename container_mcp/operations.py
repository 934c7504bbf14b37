"""
Operation table shared by every runtime adapter.

Each entry pairs an argv builder with a result shaper. The CLIs of nerdctl,
podman and docker agree on the flags used here, so one table serves all of
them; backend differences (global flags, nested run recipe, user namespaces)
are asked from the adapter.

Result conventions:
- mutating operations: {..., "success": bool} plus "error" (stderr) on failure
- listings: {<plural>: parsed output, "success": bool} plus "error" on failure
- inspect/info: the parsed document; a nonzero exit raises ExecutionFailed
- version: parsed JSON, or {"version": text} when JSON output is unsupported;
  ExecutionFailed when the plain form fails as well

Non-zero exit codes are data everywhere else.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from .base_runtime import OperationTemplate, ParamSpec
from .executor import CommandResult, ExecutionFailed
from .output_parser import parse_json_output

log = logging.getLogger(__name__)


def split_csv(value: Any) -> List[str]:
    """Split a comma-separated value, trimming elements and dropping empty ones."""
    if value is None:
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def as_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return as_text(value)


def json_pairs(raw: Any) -> Optional[List[str]]:
    """
    Decode a JSON object into KEY=VALUE strings in key order.

    A dict passed directly is accepted as well. Returns None when the value
    is not a JSON object.
    """
    if isinstance(raw, dict):
        obj = raw
    else:
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            return None
    if not isinstance(obj, dict):
        return None
    return [f"{k}={_stringify(v)}" for k, v in obj.items()]


def env_args(raw: Any) -> List[str]:
    pairs = json_pairs(raw)
    if pairs is None:
        log.debug("operations.env_passthrough")
        return ["-e", str(raw)]
    args: List[str] = []
    for pair in pairs:
        args.extend(["-e", pair])
    return args


def build_arg_args(raw: Any) -> List[str]:
    pairs = json_pairs(raw)
    if pairs is None:
        log.debug("operations.build_args_ignored")
        return []
    args: List[str] = []
    for pair in pairs:
        args.extend(["--build-arg", pair])
    return args


def repeat_flag(flag: str, value: Any) -> List[str]:
    args: List[str] = []
    for item in split_csv(value):
        args.extend([flag, item])
    return args


def outcome(result: CommandResult, **fields) -> Dict[str, Any]:
    fields["success"] = result.is_success()
    if not result.is_success():
        fields["error"] = result.stderr
    return fields


def listing(result: CommandResult, key: str) -> Dict[str, Any]:
    return outcome(result, **{key: parse_json_output(result.stdout)})


def document(result: CommandResult) -> Any:
    if not result.is_success():
        raise ExecutionFailed(result.stderr.strip() or f"exit status {result.returncode}")
    return parse_json_output(result.stdout)


def _p(name: str, type_: str, description: str, required: bool = False) -> ParamSpec:
    return ParamSpec(name, type_, description, required)


# Container lifecycle

RUN_PARAMS = (
    _p("image", "string", "Container image to run", required=True),
    _p("name", "string", "Container name"),
    _p("detach", "boolean", "Run in background (default: true)"),
    _p("ports", "string", "Port mappings, comma-separated, e.g. '8080:80,443:443'"),
    _p("env", "string", "Environment variables as a JSON object"),
    _p("volumes", "string", "Volume mounts, comma-separated, e.g. '/host:/container'"),
    _p("network", "string", "Network to connect to"),
    _p("command", "string", "Command to run in the container"),
    _p("privileged", "boolean", "Run in privileged mode"),
    _p("security_opt", "string", "Security options, comma-separated"),
    _p("cgroupns", "string", "Cgroup namespace mode (host, private)"),
    _p("nested", "boolean", "Prepare the container to drive this runtime from inside"),
)

USERNS_PARAM = _p("userns", "string", "User namespace mode (keep-id for rootless)")


def run_params(adapter) -> List[ParamSpec]:
    params = list(RUN_PARAMS)
    if adapter.supports_userns:
        params.append(USERNS_PARAM)
    return params


async def _run(adapter, p: Dict[str, Any]) -> Dict[str, Any]:
    privileged = as_bool(p.get("privileged"))
    nested = as_bool(p.get("nested"))
    userns = p.get("userns") if adapter.supports_userns else None

    args: List[str] = []
    if as_bool(p.get("detach"), default=True):
        args.append("-d")
    if p.get("name"):
        args.extend(["--name", p["name"]])
    if p.get("network"):
        args.extend(["--network", p["network"]])
    if privileged:
        args.append("--privileged")
    if p.get("cgroupns"):
        args.extend(["--cgroupns", p["cgroupns"]])
    if userns:
        args.extend(["--userns", userns])
    if nested:
        args.extend(adapter.nested_args(privileged, userns))
    args.extend(repeat_flag("--security-opt", p.get("security_opt")))
    args.extend(repeat_flag("-p", p.get("ports")))
    if p.get("env"):
        args.extend(env_args(p["env"]))
    args.extend(repeat_flag("-v", p.get("volumes")))
    args.append(p["image"])
    if p.get("command"):
        args.extend(str(p["command"]).split())

    result = await adapter.exec("run", args)
    return outcome(
        result,
        containerId=result.stdout.strip(),
        nested=nested,
        privileged=adapter.reported_privileged(privileged, nested),
    )


async def _ps(adapter, p):
    args = ["--format", "json"]
    if as_bool(p.get("all")):
        args.append("-a")
    if as_bool(p.get("quiet")):
        args.append("-q")
    return listing(await adapter.exec("ps", args), "containers")


def _bulk(subcommand: str, key: str, param: str = "containers", timed: bool = False,
          force: bool = False, extra: Optional[Dict[str, str]] = None):
    """Handler for subcommands taking a comma-separated list of targets."""
    async def handler(adapter, p):
        args: List[str] = []
        if timed and p.get("time") is not None:
            args.extend(["-t", as_text(p["time"])])
        if force and as_bool(p.get("force")):
            args.append("-f")
        for name, flag in (extra or {}).items():
            if as_bool(p.get(name)):
                args.append(flag)
        targets = split_csv(p[param])
        result = await adapter.exec(subcommand, args + targets)
        return outcome(result, **{key: targets})
    return handler


async def _kill(adapter, p):
    args: List[str] = []
    if p.get("signal"):
        args.extend(["-s", p["signal"]])
    targets = split_csv(p["containers"])
    result = await adapter.exec("kill", args + targets)
    return outcome(result, killed=targets)


async def _logs(adapter, p):
    args: List[str] = []
    if p.get("tail") is not None:
        args.extend(["--tail", as_text(p["tail"])])
    if as_bool(p.get("timestamps")):
        args.append("-t")
    # "follow" is accepted but never forwarded: replies are single-shot.
    args.append(p["container"])
    result = await adapter.exec("logs", args)
    return outcome(result, logs=result.stdout)


async def _exec(adapter, p):
    args: List[str] = []
    if as_bool(p.get("interactive")):
        args.append("-i")
    if as_bool(p.get("tty")):
        args.append("-t")
    if p.get("user"):
        args.extend(["-u", p["user"]])
    if p.get("workdir"):
        args.extend(["-w", p["workdir"]])
    args.append(p["container"])
    args.extend(str(p["command"]).split())
    result = await adapter.exec("exec", args)
    return outcome(result, output=result.stdout)


async def _top(adapter, p):
    result = await adapter.exec("top", [p["container"]])
    return outcome(result, processes=result.stdout)


async def _inspect(adapter, p):
    return document(await adapter.exec("inspect", [p["target"]]))


async def _cp(adapter, p):
    return outcome(await adapter.exec("cp", [p["source"], p["destination"]]))


# Images

async def _images(adapter, p):
    args = ["--format", "json"]
    if as_bool(p.get("all")):
        args.append("-a")
    return listing(await adapter.exec("images", args), "images")


async def _pull(adapter, p):
    args: List[str] = []
    if p.get("platform"):
        args.extend(["--platform", p["platform"]])
    args.append(p["image"])
    result = await adapter.exec("pull", args)
    return outcome(result, image=p["image"], output=result.stdout)


async def _push(adapter, p):
    result = await adapter.exec("push", [p["image"]])
    return outcome(result, image=p["image"], output=result.stdout)


async def _build(adapter, p):
    args: List[str] = []
    if p.get("file"):
        args.extend(["-f", p["file"]])
    if p.get("tag"):
        args.extend(["-t", p["tag"]])
    if as_bool(p.get("no_cache")):
        args.append("--no-cache")
    if p.get("build_args"):
        args.extend(build_arg_args(p["build_args"]))
    args.append(p.get("context") or ".")
    result = await adapter.exec("build", args)
    return outcome(result, tag=p.get("tag"), output=result.stdout)


async def _tag(adapter, p):
    return outcome(await adapter.exec("tag", [p["source"], p["target"]]))


async def _save(adapter, p):
    result = await adapter.exec("save", ["-o", p["output"], *split_csv(p["images"])])
    return outcome(result, output=p["output"])


async def _load(adapter, p):
    result = await adapter.exec("load", ["-i", p["input"]])
    return outcome(result, output=result.stdout)


# Networks and volumes

def _listing_of(group: str, key: str):
    async def handler(adapter, p):
        return listing(await adapter.exec(group, ["ls", "--format", "json"]), key)
    return handler


def _inspect_of(group: str, param: str):
    async def handler(adapter, p):
        return document(await adapter.exec(group, ["inspect", p[param]]))
    return handler


def _remove_of(group: str, param: str, with_force: bool = False):
    async def handler(adapter, p):
        args = ["rm"]
        if with_force and as_bool(p.get("force")):
            args.append("-f")
        targets = split_csv(p[param])
        result = await adapter.exec(group, args + targets)
        return outcome(result, removed=targets)
    return handler


async def _network_create(adapter, p):
    args = ["create"]
    if p.get("driver"):
        args.extend(["-d", p["driver"]])
    if p.get("subnet"):
        args.extend(["--subnet", p["subnet"]])
    args.append(p["name"])
    return outcome(await adapter.exec("network", args), name=p["name"])


async def _volume_create(adapter, p):
    return outcome(await adapter.exec("volume", ["create", p["name"]]), name=p["name"])


# Compose

def _compose_args(p, *rest: str) -> List[str]:
    args = ["-f", p["file"]] if p.get("file") else []
    args.extend(rest)
    return args


async def _compose_up(adapter, p):
    args = _compose_args(p, "up")
    if as_bool(p.get("detach"), default=True):
        args.append("-d")
    if as_bool(p.get("build")):
        args.append("--build")
    result = await adapter.exec("compose", args)
    return outcome(result, output=result.stdout)


async def _compose_down(adapter, p):
    args = _compose_args(p, "down")
    if as_bool(p.get("volumes")):
        args.append("-v")
    if as_bool(p.get("remove_orphans")):
        args.append("--remove-orphans")
    result = await adapter.exec("compose", args)
    return outcome(result, output=result.stdout)


async def _compose_ps(adapter, p):
    return listing(await adapter.exec("compose", _compose_args(p, "ps", "--format", "json")),
                   "services")


async def _compose_logs(adapter, p):
    args = _compose_args(p, "logs")
    if p.get("tail") is not None:
        args.extend(["--tail", as_text(p["tail"])])
    if p.get("service"):
        args.append(p["service"])
    result = await adapter.exec("compose", args)
    return outcome(result, logs=result.stdout)


# System

async def _info(adapter, p):
    return document(await adapter.exec("info", ["--format", "json"]))


async def _version(adapter, p):
    result = await adapter.exec("version", ["--format", "json"])
    if not result.is_success():
        text = await adapter.exec("version")
        if not text.is_success():
            raise ExecutionFailed(text.stderr.strip() or result.stderr.strip()
                                  or f"exit status {text.returncode}")
        return {"version": text.stdout}
    return parse_json_output(result.stdout)


async def _stats(adapter, p):
    args = ["--format", "json"]
    if as_bool(p.get("no_stream"), default=True):
        args.append("--no-stream")
    args.extend(split_csv(p.get("containers")))
    return listing(await adapter.exec("stats", args), "stats")


async def _system_prune(adapter, p):
    args = ["prune"]
    if as_bool(p.get("all")):
        args.append("-a")
    if as_bool(p.get("volumes")):
        args.append("--volumes")
    if as_bool(p.get("force"), default=True):
        args.append("-f")
    result = await adapter.exec("system", args)
    return outcome(result, output=result.stdout)


# Pods (podman)

async def _pod_create(adapter, p):
    args = ["create", "--name", p["name"]]
    args.extend(repeat_flag("-p", p.get("ports")))
    result = await adapter.exec("pod", args)
    return outcome(result, name=p["name"], podId=result.stdout.strip())


_CONTAINERS = _p("containers", "string", "Container ID(s) or name(s), comma-separated", required=True)
_TIME = _p("time", "number", "Seconds to wait before killing (default: 10)")
_FORCE = _p("force", "boolean", "Force removal")
_FILE = _p("file", "string", "Compose file path (default: compose.yaml)")

SHARED_OPERATIONS = (
    OperationTemplate("run", "Run a new container", _run, RUN_PARAMS),
    OperationTemplate("ps", "List containers", _ps, (
        _p("all", "boolean", "Show all containers (default: running only)"),
        _p("quiet", "boolean", "Only show container IDs"),
    ), read_only=True),
    OperationTemplate("stop", "Stop one or more containers",
                      _bulk("stop", "stopped", timed=True), (_CONTAINERS, _TIME)),
    OperationTemplate("start", "Start one or more stopped containers",
                      _bulk("start", "started"), (_CONTAINERS,)),
    OperationTemplate("restart", "Restart one or more containers",
                      _bulk("restart", "restarted", timed=True), (_CONTAINERS, _TIME)),
    OperationTemplate("kill", "Kill one or more running containers", _kill, (
        _CONTAINERS,
        _p("signal", "string", "Signal to send (default: KILL)"),
    )),
    OperationTemplate("pause", "Pause all processes within containers",
                      _bulk("pause", "paused"), (_CONTAINERS,)),
    OperationTemplate("unpause", "Unpause all processes within containers",
                      _bulk("unpause", "unpaused"), (_CONTAINERS,)),
    OperationTemplate("rm", "Remove one or more containers",
                      _bulk("rm", "removed", force=True, extra={"volumes": "-v"}), (
        _CONTAINERS,
        _p("force", "boolean", "Force removal of running containers"),
        _p("volumes", "boolean", "Remove associated anonymous volumes"),
    )),
    OperationTemplate("logs", "Fetch the logs of a container", _logs, (
        _p("container", "string", "Container ID or name", required=True),
        _p("tail", "number", "Number of lines to show from the end"),
        _p("follow", "boolean", "Follow log output (ignored, replies are single-shot)"),
        _p("timestamps", "boolean", "Show timestamps"),
    ), read_only=True),
    OperationTemplate("exec", "Execute a command in a running container", _exec, (
        _p("container", "string", "Container ID or name", required=True),
        _p("command", "string", "Command to execute", required=True),
        _p("interactive", "boolean", "Keep STDIN open"),
        _p("tty", "boolean", "Allocate a pseudo-TTY"),
        _p("user", "string", "Username or UID"),
        _p("workdir", "string", "Working directory inside the container"),
    )),
    OperationTemplate("top", "Display the running processes of a container", _top, (
        _p("container", "string", "Container ID or name", required=True),
    ), read_only=True),
    OperationTemplate("inspect", "Return low-level information on containers or images", _inspect, (
        _p("target", "string", "Container or image ID/name", required=True),
    ), read_only=True),
    OperationTemplate("cp", "Copy files between a container and the local filesystem", _cp, (
        _p("source", "string", "Source path (container:path or local path)", required=True),
        _p("destination", "string", "Destination path (container:path or local path)", required=True),
    )),

    OperationTemplate("images", "List images", _images, (
        _p("all", "boolean", "Show all images (including intermediate)"),
    ), read_only=True),
    OperationTemplate("pull", "Pull an image from a registry", _pull, (
        _p("image", "string", "Image name, e.g. nginx:latest", required=True),
        _p("platform", "string", "Platform, e.g. linux/amd64"),
    )),
    OperationTemplate("push", "Push an image to a registry", _push, (
        _p("image", "string", "Image name with tag", required=True),
    )),
    OperationTemplate("build", "Build an image from a Containerfile/Dockerfile", _build, (
        _p("context", "string", "Build context path (default: .)"),
        _p("file", "string", "Path to the Containerfile/Dockerfile"),
        _p("tag", "string", "Image tag, e.g. myimage:latest"),
        _p("build_args", "string", "Build arguments as a JSON object"),
        _p("no_cache", "boolean", "Do not use the build cache"),
    )),
    OperationTemplate("tag", "Create a tag for an image", _tag, (
        _p("source", "string", "Source image", required=True),
        _p("target", "string", "Target image with tag", required=True),
    )),
    OperationTemplate("rmi", "Remove one or more images",
                      _bulk("rmi", "removed", param="images", force=True), (
        _p("images", "string", "Image ID(s) or name(s), comma-separated", required=True),
        _FORCE,
    )),
    OperationTemplate("save", "Save images to a tar archive", _save, (
        _p("images", "string", "Images to save, comma-separated", required=True),
        _p("output", "string", "Output file path", required=True),
    )),
    OperationTemplate("load", "Load images from a tar archive", _load, (
        _p("input", "string", "Input file path", required=True),
    )),

    OperationTemplate("network_ls", "List networks", _listing_of("network", "networks"),
                      read_only=True),
    OperationTemplate("network_create", "Create a network", _network_create, (
        _p("name", "string", "Network name", required=True),
        _p("driver", "string", "Network driver (bridge, host, none)"),
        _p("subnet", "string", "Subnet in CIDR format"),
    )),
    OperationTemplate("network_rm", "Remove one or more networks", _remove_of("network", "networks"), (
        _p("networks", "string", "Network name(s), comma-separated", required=True),
    )),
    OperationTemplate("network_inspect", "Display detailed information on a network",
                      _inspect_of("network", "network"), (
        _p("network", "string", "Network name or ID", required=True),
    ), read_only=True),

    OperationTemplate("volume_ls", "List volumes", _listing_of("volume", "volumes"),
                      read_only=True),
    OperationTemplate("volume_create", "Create a volume", _volume_create, (
        _p("name", "string", "Volume name", required=True),
    )),
    OperationTemplate("volume_rm", "Remove one or more volumes",
                      _remove_of("volume", "volumes", with_force=True), (
        _p("volumes", "string", "Volume name(s), comma-separated", required=True),
        _FORCE,
    )),
    OperationTemplate("volume_inspect", "Display detailed information on a volume",
                      _inspect_of("volume", "volume"), (
        _p("volume", "string", "Volume name", required=True),
    ), read_only=True),

    OperationTemplate("compose_up", "Create and start the services of a compose file", _compose_up, (
        _FILE,
        _p("detach", "boolean", "Run in background (default: true)"),
        _p("build", "boolean", "Build images before starting"),
    )),
    OperationTemplate("compose_down", "Stop and remove the services of a compose file", _compose_down, (
        _FILE,
        _p("volumes", "boolean", "Remove named volumes"),
        _p("remove_orphans", "boolean", "Remove containers for services not in the file"),
    )),
    OperationTemplate("compose_ps", "List compose services", _compose_ps, (_FILE,),
                      read_only=True),
    OperationTemplate("compose_logs", "View compose service logs", _compose_logs, (
        _FILE,
        _p("service", "string", "Service name (all services if omitted)"),
        _p("tail", "number", "Number of lines to show from the end"),
    ), read_only=True),

    OperationTemplate("info", "Display system-wide information", _info, read_only=True),
    OperationTemplate("version", "Show runtime version information", _version, read_only=True),
    OperationTemplate("stats", "Display container resource usage statistics", _stats, (
        _p("containers", "string", "Containers to report, comma-separated (all if omitted)"),
        _p("no_stream", "boolean", "Take a single sample (default: true)"),
    ), read_only=True),
    OperationTemplate("system_prune", "Remove unused containers, networks and images", _system_prune, (
        _p("all", "boolean", "Remove all unused images, not just dangling ones"),
        _p("volumes", "boolean", "Also prune volumes"),
        _p("force", "boolean", "Do not prompt for confirmation (default: true)"),
    )),
)

POD_OPERATIONS = (
    OperationTemplate("pod_ls", "List pods", _listing_of("pod", "pods"), read_only=True),
    OperationTemplate("pod_create", "Create a pod", _pod_create, (
        _p("name", "string", "Pod name", required=True),
        _p("ports", "string", "Port mappings published by the pod, comma-separated"),
    )),
    OperationTemplate("pod_rm", "Remove one or more pods", _remove_of("pod", "pods", with_force=True), (
        _p("pods", "string", "Pod name(s) or ID(s), comma-separated", required=True),
        _FORCE,
    )),
)
