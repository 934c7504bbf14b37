"""
Base class for container runtime adapters.

A runtime adapter turns named operations (``podman_run``, ``nerdctl_ps``, ...)
into validated CLI invocations of one backend and shapes the result into a
JSON-serializable reply. All backends share one adapter implementation; the
subclasses in ``container_mcp.runtimes`` only carry data and small hooks:

- kind / description: identity of the backend
- allowed_commands: subcommand whitelist
- global_flags(): daemon/namespace flags prepended to every invocation
- nested_args(): the "container-in-container" run recipe
- extra_operations: backend-only operations (podman pods)

Usage:
    from container_mcp.runtimes.podman import PodmanRuntime

    runtime = PodmanRuntime()
    await runtime.connect()
    reply = await runtime.call("podman_ps", {"all": True})
"""
import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import (Any, Awaitable, Callable, ClassVar, Dict, FrozenSet, List,
                    Mapping, Optional, Sequence, Tuple)

from .config import get_config
from .executor import (COMMON_COMMANDS, CommandNotAllowed, CommandResult,
                       ExecutionError, ProcessExecutor, RuntimeNotFound,
                       is_allowed, sanitize_arg)

log = logging.getLogger(__name__)


class RuntimeKind(str, Enum):
    """Supported backends; values are the CLI names."""
    NERDCTL = "nerdctl"
    PODMAN = "podman"
    DOCKER = "docker"


# FOSS-first selection order.
RUNTIME_PRIORITY: Tuple[RuntimeKind, ...] = (
    RuntimeKind.NERDCTL, RuntimeKind.PODMAN, RuntimeKind.DOCKER,
)

PARAM_TYPES = ("string", "number", "boolean")


@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: str
    description: str
    required: bool = False

    def __post_init__(self):
        if self.type not in PARAM_TYPES:
            raise ValueError(f"Unsupported parameter type: {self.type}")


Handler = Callable[["RuntimeAdapter", Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class OperationTemplate:
    """Backend-independent definition of one operation."""
    action: str
    description: str
    handler: Handler
    params: Tuple[ParamSpec, ...] = ()
    read_only: bool = False

    def bind(self, kind: "RuntimeKind", params: Optional[Sequence[ParamSpec]] = None) -> "Operation":
        return Operation(
            name=f"{kind.value}_{self.action}",
            action=self.action,
            description=self.description,
            params=tuple(params) if params is not None else self.params,
            handler=self.handler,
            read_only=self.read_only,
        )


@dataclass(frozen=True)
class Operation:
    """
    One entry of an adapter's operation table.

    Attributes:
        name: Qualified name, "<runtime>_<action>"
        action: Backend-independent action name
        description: Human readable summary
        params: Declared parameters
        handler: Coroutine building the argv and shaping the reply
        read_only: True when the operation never changes runtime state
    """
    name: str
    action: str
    description: str
    params: Tuple[ParamSpec, ...]
    handler: Handler
    read_only: bool = False

    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                p.name: {"type": p.type, "description": p.description}
                for p in self.params
            },
        }

    def describe(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "params": {
                p.name: {"type": p.type, "description": p.description, "required": p.required}
                for p in self.params
            },
        }

    def check_required(self, arguments: Mapping[str, Any]):
        for p in self.params:
            if p.required and arguments.get(p.name) in (None, ""):
                raise ValueError(f"Missing required parameter '{p.name}' for {self.name}")


@dataclass(frozen=True)
class ConnectionCheck:
    """Outcome of a version query against a runtime binary."""
    connected: bool
    detail: str = ""


class RuntimeAdapter:
    """
    Generic adapter over one container runtime CLI.

    Subclasses must define:
    - kind: RuntimeKind of the backend
    - description: One-line description shown to clients
    """

    kind: ClassVar[RuntimeKind]
    description: ClassVar[str] = ""
    allowed_commands: ClassVar[FrozenSet[str]] = COMMON_COMMANDS
    nested_mounts: ClassVar[Tuple[str, ...]] = ()
    nested_forces_privileged: ClassVar[bool] = False
    supports_userns: ClassVar[bool] = False
    extra_operations: ClassVar[Tuple[OperationTemplate, ...]] = ()

    def __init__(self, config=None, executor: Optional[ProcessExecutor] = None):
        self.config = config or get_config()
        self.executor = executor or ProcessExecutor()
        self.name = self.kind.value
        self._connected = False
        self._operations = MappingProxyType(self._build_operations())
        log.debug("runtime.initialized name=%s binary=%s operations=%d",
                  self.name, self.binary, len(self._operations))

    def _build_operations(self) -> Dict[str, Operation]:
        from .operations import SHARED_OPERATIONS, run_params

        ops: Dict[str, Operation] = {}
        for template in SHARED_OPERATIONS:
            params = run_params(self) if template.action == "run" else None
            op = template.bind(self.kind, params)
            ops[op.name] = op
        for template in self.extra_operations:
            op = template.bind(self.kind)
            ops[op.name] = op
        return ops

    @property
    def binary(self) -> str:
        return getattr(self.config.runtime, f"{self.name}_path") or self.name

    @property
    def operations(self) -> Mapping[str, Operation]:
        return self._operations

    @property
    def connected(self) -> bool:
        return self._connected

    def global_flags(self) -> List[str]:
        """Flags placed before the subcommand on every invocation."""
        return []

    def nested_args(self, privileged: bool, userns: Optional[str]) -> List[str]:
        """Run flags for a container that controls this runtime from inside."""
        args: List[str] = []
        for mount in self.nested_mounts:
            args.extend(["-v", mount])
        if self.nested_forces_privileged and not privileged:
            args.append("--privileged")
        return args

    def reported_privileged(self, privileged: bool, nested: bool) -> bool:
        return privileged or (nested and self.nested_forces_privileged)

    async def exec(self, subcommand: str, args: Sequence[Any] = ()) -> CommandResult:
        """
        Run one whitelisted subcommand.

        Raises:
            CommandNotAllowed: subcommand outside the whitelist, nothing spawned
            RuntimeNotFound: binary missing
            ExecutionFailed: process could not be spawned
        """
        if not is_allowed(subcommand, self.allowed_commands):
            log.warning("runtime.command_rejected runtime=%s subcommand=%s", self.name, subcommand)
            raise CommandNotAllowed(subcommand)

        argv = [*self.global_flags(), subcommand, *(sanitize_arg(a) for a in args)]
        return await self.executor.execute(self.binary, argv)

    async def connect(self):
        if self._connected:
            return
        result = await self.exec("version")
        if not result.is_success():
            log.info("runtime.connect_failed runtime=%s returncode=%d", self.name, result.returncode)
            raise RuntimeNotFound(self.name, f"{self.name} not available: {result.stderr.strip()}")
        self._connected = True
        log.info("runtime.connected runtime=%s", self.name)

    async def disconnect(self):
        self._connected = False
        log.debug("runtime.disconnected runtime=%s", self.name)

    async def check_connection(self) -> ConnectionCheck:
        try:
            result = await self.exec("version")
        except ExecutionError as e:
            return ConnectionCheck(False, str(e))
        if result.is_success():
            first_line = next(iter(result.stdout.strip().splitlines()), "")
            return ConnectionCheck(True, first_line)
        return ConnectionCheck(False, result.stderr.strip())

    async def is_connected(self) -> bool:
        return (await self.check_connection()).connected

    def get_operation(self, name: str) -> Operation:
        op = self._operations.get(name)
        if op is None:
            raise ValueError(f"Unknown operation: {name}")
        return op

    async def call(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> Any:
        op = self.get_operation(name)
        params = dict(arguments or {})
        op.check_required(params)
        log.debug("runtime.call runtime=%s operation=%s", self.name, name)
        return await op.handler(self, params)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(binary={self.binary!r}, connected={self._connected})"
