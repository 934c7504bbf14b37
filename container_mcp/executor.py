"""
Process execution primitives for container runtime CLIs.

Every call into a runtime binary goes through this module:
- Command whitelist check (subcommand must be known before anything is spawned)
- Argument sanitization (shell metacharacters stripped from every argument)
- Argument-vector spawning via asyncio, never through a shell
- Full capture of stdout/stderr/exit code

Non-zero exit codes are returned as data inside CommandResult. Only failures to
validate or to spawn are raised, using the ExecutionError hierarchy.

Usage:
    from container_mcp.executor import ProcessExecutor, sanitize_arg

    executor = ProcessExecutor()
    result = await executor.execute("podman", ["version", "--format", "json"])
    if result.is_success():
        print(result.stdout)
"""
import asyncio
import logging
import re
import time
from typing import Any, FrozenSet, Iterable, Optional, Sequence

from pydantic import BaseModel

log = logging.getLogger(__name__)

_DENY_CHARS = re.compile(r"[;&|`$(){}\[\]<>]")

# Subcommands shared by every supported runtime CLI.
COMMON_COMMANDS: FrozenSet[str] = frozenset({
    "run", "create", "start", "stop", "restart", "kill", "rm", "pause", "unpause",
    "ps", "inspect", "logs", "top", "stats", "port", "diff", "exec", "attach", "cp",
    "export", "images", "pull", "push", "build", "tag", "rmi", "save", "load",
    "image", "history", "network", "volume", "compose", "info", "version", "system",
    "events", "login", "logout",
})


class ExecutionError(Exception):
    """Base class for failures raised before or while spawning a runtime CLI."""


class CommandNotAllowed(ExecutionError):
    """Raised when a subcommand is not part of the runtime whitelist."""

    def __init__(self, subcommand: str):
        super().__init__(f"Command not allowed: {subcommand}")
        self.subcommand = subcommand


class ExecutionFailed(ExecutionError):
    """Raised when the process could not be spawned or awaited."""


class RuntimeNotFound(ExecutionError):
    """Raised when a runtime binary is missing or its version query fails."""

    def __init__(self, runtime: str, message: Optional[str] = None,
                 suggestion: Optional[str] = None):
        super().__init__(message or f"{runtime} not available")
        self.runtime = runtime
        self.suggestion = suggestion


class CommandResult(BaseModel):
    """
    Captured result of one runtime CLI invocation.

    Attributes:
        stdout: Decoded standard output
        stderr: Decoded standard error
        returncode: Process exit status
        execution_time: Wall-clock duration in seconds
    """
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    execution_time: Optional[float] = None

    def is_success(self) -> bool:
        return self.returncode == 0


def sanitize_arg(arg: Any) -> str:
    """Strip shell metacharacters and surrounding whitespace from one argument."""
    if not isinstance(arg, str):
        arg = str(arg)
    return _DENY_CHARS.sub("", arg).strip()


def is_allowed(subcommand: str, allowed: Iterable[str] = COMMON_COMMANDS) -> bool:
    """Whitelist membership test."""
    return subcommand in allowed


class ProcessExecutor:
    """
    Spawns a binary with an explicit argument vector and waits for it to exit.

    No timeout is applied and output is not streamed: the calling task is
    suspended until the child exits, other tasks keep running.
    """

    async def execute(self, binary: str, argv: Sequence[str]) -> CommandResult:
        cmd = [binary, *argv]
        start_time = time.time()
        log.debug("executor.start command=%s", " ".join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            out, err = await proc.communicate()
        except FileNotFoundError:
            log.warning("executor.not_found binary=%s", binary)
            raise RuntimeNotFound(binary, f"Command not found: {binary}")
        except OSError as e:
            log.error("executor.spawn_failed binary=%s error=%s", binary, str(e))
            raise ExecutionFailed(f"Execution failed: {e.__class__.__name__}: {e}") from e

        result = CommandResult(
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            returncode=proc.returncode,
            execution_time=time.time() - start_time,
        )
        log.debug("executor.end binary=%s returncode=%d duration=%.3f",
                  binary, result.returncode, result.execution_time)
        return result
