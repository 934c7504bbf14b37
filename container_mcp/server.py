"""
MCP server exposing nerdctl, podman and docker through one tool surface.

Features:
- Dual transport support (stdio via the mcp SDK, HTTP via FastAPI/uvicorn)
- Meta tools for runtime discovery, selection and help
- Every runtime operation as its own tool (nerdctl_run, podman_ps, ...)
- Diagnostics: health, metrics, cache and circuit breaker tools
- Errors returned as {error, context, feedback, timestamp}, never raised
  into the transport loop
- Graceful shutdown

Usage:
    # Stdio transport (for MCP clients)
    python -m container_mcp.server

    # HTTP transport
    MCP_SERVER_TRANSPORT=http python -m container_mcp.server
    python -m container_mcp.server --http

    # Custom configuration
    MCP_CONFIG_FILE=config.yaml python -m container_mcp.server

Environment Variables:
    MCP_SERVER_TRANSPORT: Transport mode (stdio|http)
    MCP_SERVER_PORT: HTTP server port (default: 8080)
    MCP_SERVER_HOST: HTTP server host (default: 0.0.0.0)
    MCP_CONFIG_FILE: Configuration file path
    CONTAINER_RUNTIME: Preferred runtime (nerdctl|podman|docker|auto)
    LOG_LEVEL / LOG_FORMAT: Logging overrides
"""
import asyncio
import json
import logging
import logging.handlers
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import mcp.types as types
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from mcp.server.lowlevel import Server as MCPServerBase
from mcp.server.stdio import stdio_server
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from .base_runtime import RUNTIME_PRIORITY
from .circuit_breaker import CircuitBreakerOpenError
from .config import get_config
from .executor import RuntimeNotFound
from .health import HealthStatus
from .registry import DOCKER_SUGGESTION, RuntimeRegistry
from .resilience import cache_stats, circuit_status, clear_cache, reset_circuit

log = logging.getLogger(__name__)

PACKAGE_NAME = "polyglot-container-mcp"
PACKAGE_VERSION = "1.1.0"
FEEDBACK_URL = "https://github.com/hyperpolymath/polyglot-container-mcp/issues"
FOSS_PRIORITY = " > ".join(k.value for k in RUNTIME_PRIORITY)

_RUNTIME_ENUM = [k.value for k in RUNTIME_PRIORITY]


def setup_logging(config=None) -> None:
    """Configure root logging from config, with LOG_LEVEL/LOG_FORMAT overrides."""
    cfg = (config or get_config()).logging
    level = os.getenv("LOG_LEVEL", cfg.level).upper()
    fmt = os.getenv("LOG_FORMAT", cfg.format)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if cfg.file_path:
        handlers.append(logging.handlers.RotatingFileHandler(
            cfg.file_path, maxBytes=cfg.max_file_size, backupCount=cfg.backup_count
        ))
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=fmt,
                        handlers=handlers, force=True)
    log.info("logging.configured level=%s file=%s", level, cfg.file_path)


def format_error(error: Any, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": str(error),
        "context": context or {},
        "feedback": f"Report issues: {FEEDBACK_URL}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _schema(properties: Optional[Dict[str, Any]] = None, required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


META_TOOLS: List[Dict[str, Any]] = [
    {
        "name": "container_list",
        "description": "List all container runtimes and their connection status",
        "inputSchema": _schema(),
    },
    {
        "name": "container_detect",
        "description": "Auto-detect and connect to available container runtimes",
        "inputSchema": _schema(),
    },
    {
        "name": "container_prefer",
        "description": "Set the preferred container runtime for operations",
        "inputSchema": _schema({
            "runtime": {"type": "string", "enum": _RUNTIME_ENUM + ["auto"],
                        "description": "Runtime to prefer (auto uses FOSS-first order)"},
        }, required=["runtime"]),
    },
    {
        "name": "container_help",
        "description": "Describe the operations of one runtime or of all runtimes",
        "inputSchema": _schema({
            "runtime": {"type": "string", "enum": _RUNTIME_ENUM + ["all"],
                        "description": "Runtime to get help for"},
        }),
    },
    {
        "name": "container_version",
        "description": "Version of this server and of every connected runtime",
        "inputSchema": _schema(),
    },
    {
        "name": "container_action",
        "description": "Run an operation on the preferred or first connected runtime",
        "inputSchema": _schema({
            "action": {"type": "string", "description": "Operation without runtime prefix, e.g. 'ps'"},
            "runtime": {"type": "string", "enum": _RUNTIME_ENUM + ["auto"],
                        "description": "Runtime to use instead of the automatic choice"},
            "arguments": {"type": "object", "description": "Operation parameters"},
        }, required=["action"]),
    },
    {
        "name": "mcp_health_check",
        "description": "Health status of every runtime",
        "inputSchema": _schema(),
    },
    {
        "name": "mcp_metrics",
        "description": "Call metrics and statistics",
        "inputSchema": _schema(),
    },
    {
        "name": "mcp_cache_stats",
        "description": "Response cache statistics and hit rates",
        "inputSchema": _schema(),
    },
    {
        "name": "mcp_circuit_status",
        "description": "Circuit breaker state of every runtime",
        "inputSchema": _schema(),
    },
    {
        "name": "mcp_clear_cache",
        "description": "Clear the response cache",
        "inputSchema": _schema({
            "runtime": {"type": "string", "description": "Only clear this runtime's cache"},
        }),
    },
    {
        "name": "mcp_reset_circuit",
        "description": "Reset a runtime's circuit breaker to closed",
        "inputSchema": _schema({
            "runtime": {"type": "string", "description": "Runtime whose breaker is reset"},
        }, required=["runtime"]),
    },
]

_META_NAMES = {tool["name"] for tool in META_TOOLS}


class ToolCallError(Exception):
    """Carries a serialized error envelope to the MCP SDK, which flags it isError."""


class ToolCallRequest(BaseModel):
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ContainerMCPServer:
    """
    Transport-independent tool surface over a RuntimeRegistry.

    list_tools() and call_tool() are what both transports use; call_tool never
    raises, it returns (payload, is_error).
    """

    def __init__(self, config=None, registry: Optional[RuntimeRegistry] = None,
                 transport: Optional[str] = None):
        self.config = config or get_config()
        self.registry = registry or RuntimeRegistry(self.config)
        self.transport = transport or self.config.server.transport
        self.server = self._build_mcp_server()
        log.info("server.initialized transport=%s tools=%d", self.transport, len(self.list_tools()))

    # Tool surface

    def list_tools(self) -> List[Dict[str, Any]]:
        tools = [dict(tool) for tool in META_TOOLS]
        for kind in RUNTIME_PRIORITY:
            for op in self.registry.adapters[kind].operations.values():
                tools.append({
                    "name": op.name,
                    "description": op.description,
                    "inputSchema": op.input_schema(),
                })
        return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Tuple[Any, bool]:
        arguments = dict(arguments or {})
        try:
            if name in _META_NAMES:
                return await self._call_meta(name, arguments), False
            if self.registry.owner_of(name) is None:
                return format_error(f"Unknown tool: {name}", {"tool": name}), True
            return await self.registry.dispatch(name, arguments), False
        except RuntimeNotFound as e:
            runtime = e.runtime
            suggestion = e.suggestion or (
                DOCKER_SUGGESTION if runtime == "docker" else f"Ensure {runtime} is installed and accessible"
            )
            log.info("tool.runtime_unavailable tool=%s runtime=%s", name, runtime)
            return format_error(e, {"tool": name, "suggestion": suggestion}), True
        except CircuitBreakerOpenError as e:
            log.warning("tool.circuit_open tool=%s retry_after=%s", name, e.retry_after)
            return format_error(e, {"tool": name, "retry_after": e.retry_after}), True
        except Exception as e:
            log.error("tool.failed tool=%s error_type=%s error=%s", name, type(e).__name__, str(e))
            return format_error(e, {"tool": name, "params": arguments}), True

    async def _call_meta(self, name: str, args: Dict[str, Any]) -> Any:
        registry = self.registry

        if name == "container_list":
            info = await registry.list_runtimes()
            groups: Dict[str, List[Dict[str, Any]]] = {"connected": [], "available": [], "unavailable": []}
            for rt in info["runtimes"]:
                entry = {"name": rt["name"], "description": rt["description"], "binary": rt["binary"]}
                if rt["connected"]:
                    groups["connected"].append(entry)
                elif rt["available"]:
                    groups["available"].append(entry)
                else:
                    groups["unavailable"].append(entry)
            return {
                "preferred_runtime": info["preferred"] or "auto (FOSS-first)",
                "current": info["current"],
                **groups,
                "note": "FOSS runtimes (nerdctl, podman) are preferred over Docker",
            }

        if name == "container_detect":
            report = await registry.connect_all()
            return {
                **report,
                "total_connected": len(registry.connected_kinds()),
                "preferred_runtime": registry.preferred.value if registry.preferred else "auto",
            }

        if name == "container_prefer":
            if "runtime" not in args:
                raise ValueError("Missing required parameter 'runtime'")
            kind = await registry.set_preference(args["runtime"])
            if kind is None:
                return {
                    "message": f"Preference cleared. Using FOSS-first auto-detection ({FOSS_PRIORITY})",
                    "current": None,
                }
            reply = {"message": f"Preferred runtime set to: {kind.value}", "current": kind.value}
            if kind.value == "docker":
                reply["note"] = "Consider using nerdctl or podman for FOSS alternatives"
            return reply

        if name == "container_help":
            runtime = args.get("runtime")
            help_doc = registry.describe_operations(None if runtime in (None, "all") else runtime)
            help_doc["meta"] = {
                "version": PACKAGE_VERSION,
                "feedback": FEEDBACK_URL,
                "foss_priority": FOSS_PRIORITY,
                "meta_tools": sorted(_META_NAMES),
            }
            return help_doc

        if name == "container_version":
            return {PACKAGE_NAME: PACKAGE_VERSION, **(await registry.collect_versions())}

        if name == "container_action":
            if not args.get("action"):
                raise ValueError("Missing required parameter 'action'")
            arguments = args.get("arguments") or {}
            if not isinstance(arguments, dict):
                raise ValueError("'arguments' must be an object")
            return await registry.invoke(args["action"], arguments, runtime=args.get("runtime"))

        resilient = registry.resilient_by_name()
        if name == "mcp_health_check":
            return (await registry.health_manager.run_checks()).to_dict()
        if name == "mcp_metrics":
            return registry.metrics.get_report()
        if name == "mcp_cache_stats":
            return cache_stats(resilient)
        if name == "mcp_circuit_status":
            return circuit_status(resilient)
        if name == "mcp_clear_cache":
            return clear_cache(resilient, args.get("runtime"))
        if name == "mcp_reset_circuit":
            return await reset_circuit(resilient, args.get("runtime"))

        raise ValueError(f"Unknown tool: {name}")

    # Lifecycle

    async def startup(self) -> Dict[str, Any]:
        """Connect every available runtime and log the outcome per runtime."""
        log.info("server.starting name=%s version=%s priority=%s",
                 PACKAGE_NAME, PACKAGE_VERSION, FOSS_PRIORITY)
        if not self.config.runtime.auto_connect:
            return {"connected": [], "failed": [], "skipped": []}

        report = await self.registry.connect_all()
        for entry in report["connected"]:
            log.info("server.runtime ✓ %s: %s", entry["runtime"], entry["description"])
        for entry in report["failed"]:
            log.info("server.runtime ✗ %s: not available", entry["runtime"])
        if not self.registry.connected_kinds():
            log.warning("server.no_runtimes hint='install nerdctl, podman or docker'")
        log.info("server.ready tools=%d connected=%d feedback=%s",
                 len(self.list_tools()), len(self.registry.connected_kinds()), FEEDBACK_URL)
        return report

    async def cleanup(self):
        log.info("server.cleanup_started")
        try:
            await self.registry.disconnect_all()
        except Exception as e:
            log.error("cleanup.disconnect_failed error=%s", str(e))
        log.info("server.cleanup_completed")

    # stdio transport

    def _build_mcp_server(self) -> MCPServerBase:
        server = MCPServerBase(PACKAGE_NAME)

        @server.list_tools()
        async def handle_list_tools() -> List[types.Tool]:
            return [
                types.Tool(name=t["name"], description=t["description"], inputSchema=t["inputSchema"])
                for t in self.list_tools()
            ]

        @server.call_tool()
        async def handle_call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> List[types.TextContent]:
            payload, is_error = await self.call_tool(name, arguments)
            text = json.dumps(payload, indent=2, default=str)
            if is_error:
                raise ToolCallError(text)
            return [types.TextContent(type="text", text=text)]

        return server

    async def run_stdio(self):
        log.info("server.start_stdio")
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options(),
            )

    # HTTP transport

    def create_http_app(self) -> FastAPI:
        app = FastAPI(
            title=PACKAGE_NAME,
            version=PACKAGE_VERSION,
            description="Container runtime tools over HTTP",
        )

        @app.get("/")
        async def root():
            return {
                "name": PACKAGE_NAME,
                "version": PACKAGE_VERSION,
                "transport": "http",
                "tools": len(self.list_tools()),
                "connected": [k.value for k in self.registry.connected_kinds()],
                "endpoints": {
                    "health": "/health",
                    "tools": "/tools",
                    "runtimes": "/runtimes",
                    "metrics": "/metrics",
                    "events": "/events",
                },
            }

        @app.get("/health")
        async def health_check():
            health = await self.registry.health_manager.run_checks()
            status_code = 200
            if health.overall_status == HealthStatus.UNHEALTHY:
                status_code = 503
            elif health.overall_status == HealthStatus.DEGRADED:
                status_code = 207
            return JSONResponse(status_code=status_code, content=health.to_dict())

        @app.get("/tools")
        async def get_tools():
            tools = self.list_tools()
            return {"tools": tools, "total": len(tools)}

        @app.post("/tools/{tool_name}/call")
        async def call_tool(tool_name: str, request: ToolCallRequest):
            if tool_name not in _META_NAMES and self.registry.owner_of(tool_name) is None:
                raise HTTPException(status_code=404, detail=f"Tool {tool_name} not found")
            payload, is_error = await self.call_tool(tool_name, request.arguments)
            return JSONResponse(content=json.loads(json.dumps(
                {"content": payload, "isError": is_error}, default=str
            )))

        @app.get("/runtimes")
        async def runtimes():
            return await self.registry.list_runtimes()

        @app.get("/metrics")
        async def metrics():
            metrics_text = self.registry.metrics.get_prometheus_metrics()
            if metrics_text:
                return Response(content=metrics_text, media_type=CONTENT_TYPE_LATEST)
            return JSONResponse(content=self.registry.metrics.get_report())

        @app.get("/config")
        async def get_config_endpoint():
            return self.config.to_dict(redact_sensitive=True)

        @app.get("/events")
        async def events(request: Request):
            async def event_generator():
                while not await request.is_disconnected():
                    health = await self.registry.health_manager.run_checks()
                    yield json.dumps({"type": "health", "data": {
                        "status": health.overall_status.value,
                        "timestamp": health.timestamp.isoformat(),
                    }})
                    yield json.dumps({"type": "metrics", "data": self.registry.metrics.get_report()})
                    await asyncio.sleep(5)

            return EventSourceResponse(event_generator())

        return app

    async def run_http(self):
        port = int(self.config.server.port)
        host = self.config.server.host
        app = self.create_http_app()
        server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
        log.info("http_server.starting host=%s port=%d", host, port)
        await server.serve()

    async def run(self):
        if self.transport == "http":
            await self.run_http()
        elif self.transport == "stdio":
            await _serve(self.run_stdio(), self.config.server.shutdown_grace_period)
        else:
            raise ValueError(f"Invalid transport: {self.transport}")


async def _serve(serve_coro, shutdown_grace: float) -> None:
    """Run serve_coro until it finishes or SIGINT/SIGTERM arrives."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            log.warning("server.signal_handler_not_supported signal=%s platform=%s", sig, sys.platform)

    serve_task = asyncio.create_task(serve_coro, name="mcp_serve")
    stop_task = asyncio.create_task(stop.wait(), name="mcp_stop")
    done, _ = await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    if serve_task in done:
        stop_task.cancel()
        serve_task.result()
        return

    log.info("server.shutdown_initiated grace_period=%.1fs", shutdown_grace)
    serve_task.cancel()
    try:
        await asyncio.wait_for(serve_task, timeout=shutdown_grace)
    except asyncio.CancelledError:
        log.info("server.shutdown_completed")
    except asyncio.TimeoutError:
        log.warning("server.shutdown_forced timeout=%.1fs", shutdown_grace)


async def main(argv: Optional[List[str]] = None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    config = get_config()
    setup_logging(config)

    transport = "http" if "--http" in argv else config.server.transport
    server = ContainerMCPServer(config=config, transport=transport)
    try:
        await server.startup()
        await server.run()
    finally:
        await server.cleanup()
        log.info("main.shutdown_complete")


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("main.interrupted_by_user")
    except Exception as e:
        log.critical("main.fatal_error error=%s", str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
