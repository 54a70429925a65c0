"""Bridge to external MCP servers.

Connects to each configured server (stdio subprocess or streamable HTTP),
discovers its tools once per connection, and exposes them as ordinary
``ToolDescriptor``s whose handler proxies the call back to the owning
server.

Usage:
    async with McpBridge(settings.mcp_servers) as bridge:
        registry.merge_remote(bridge.descriptors())
        ...

A server that fails to connect or list its tools is marked ``FAILED`` and
simply contributes no tools; the run goes on without it.
"""

from __future__ import annotations

import asyncio
import enum
import json as _json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from agent_runtime.config import McpServerConfig
from agent_runtime.errors import ToolErrorKind
from agent_runtime.models import Capability, ToolDescriptor, ToolResult

logger = logging.getLogger(__name__)

SessionFactory = Callable[[McpServerConfig, AsyncExitStack], Awaitable[Any]]
"""Opens a ClientSession-like object, registering its cleanup on the stack."""


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


@dataclass
class McpServerHandle:
    config: McpServerConfig
    state: ConnectionState = ConnectionState.DISCONNECTED
    tools: list[ToolDescriptor] = field(default_factory=list)
    last_error: str | None = None
    session: Any = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def endpoint(self) -> str:
        return self.config.endpoint


def _import_mcp() -> tuple[Any, ...]:
    """Lazily import mcp client components.

    Returns:
        (stdio_client, StdioServerParameters, ClientSession, streamablehttp_client)
    """
    try:
        from mcp import ClientSession
        from mcp.client.stdio import StdioServerParameters, stdio_client
        from mcp.client.streamable_http import streamablehttp_client
    except ImportError:
        raise ImportError("mcp package is required for MCP servers. Install with: pip install mcp") from None
    return stdio_client, StdioServerParameters, ClientSession, streamablehttp_client


async def open_mcp_session(config: McpServerConfig, stack: AsyncExitStack) -> Any:
    """Default SessionFactory: stdio when ``command`` is set, else streamable HTTP."""
    stdio_client, StdioServerParameters, ClientSession, streamablehttp_client = _import_mcp()
    if config.command:
        params = StdioServerParameters(
            command=config.command,
            args=list(config.args),
            env=dict(config.env) if config.env else None,
            cwd=config.cwd,
        )
        read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
    else:
        read_stream, write_stream, _get_session_id = await stack.enter_async_context(
            streamablehttp_client(config.url, headers=dict(config.headers) or None)
        )
    return await stack.enter_async_context(ClientSession(read_stream, write_stream))


def _input_schema(tool: Any) -> dict[str, Any]:
    schema = getattr(tool, "inputSchema", None)
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}
    schema = dict(schema)
    schema.setdefault("type", "object")
    if not isinstance(schema.get("properties", {}), dict):
        schema["properties"] = {}
    return schema


def _result_text(result: Any) -> str:
    parts: list[str] = []
    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        if text is not None:
            parts.append(text)
        elif getattr(item, "data", None) is not None:
            parts.append(f"[{getattr(item, 'type', 'binary')} content: {getattr(item, 'mimeType', 'unknown')}]")
        else:
            parts.append(str(item))
    if not parts:
        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            return _json.dumps(structured, ensure_ascii=False, default=str)
    return "\n".join(parts)


class McpBridge:
    """Connections to MCP servers and their discovered tools."""

    def __init__(
        self,
        servers: Sequence[McpServerConfig] = (),
        *,
        session_factory: SessionFactory | None = None,
        init_timeout: float | None = None,
    ) -> None:
        self.handles: dict[str, McpServerHandle] = {}
        for config in servers:
            if config.name in self.handles:
                raise ValueError(f"Duplicate MCP server name {config.name!r}")
            self.handles[config.name] = McpServerHandle(config)
        self._session_factory = session_factory or open_mcp_session
        self._init_timeout = init_timeout
        self._stack: AsyncExitStack | None = None
        self._tool_to_server: dict[str, str] = {}

    async def __aenter__(self) -> "McpBridge":
        self._stack = AsyncExitStack()
        await self._stack.__aenter__()
        await self.connect_all()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._stack is not None:
            await self._stack.__aexit__(*exc)
            self._stack = None
        for handle in self.handles.values():
            handle.state = ConnectionState.DISCONNECTED
            handle.session = None
            handle.tools = []
        self._tool_to_server = {}

    async def connect_all(self) -> list[ToolDescriptor]:
        discovered: list[ToolDescriptor] = []
        for handle in self.handles.values():
            if not handle.config.enabled:
                logger.info("MCP server %s is disabled; skipping", handle.name)
                continue
            discovered.extend(await self.discover(handle))
        ready = sum(1 for h in self.handles.values() if h.state is ConnectionState.READY)
        logger.info("McpBridge: %d/%d servers ready, %d tools", ready, len(self.handles), len(discovered))
        return discovered

    async def discover(self, server: McpServerHandle | str) -> list[ToolDescriptor]:
        """Connect (once) and list the server's tools; failures yield no tools."""
        handle = self.handles[server] if isinstance(server, str) else server
        if handle.state is ConnectionState.READY:
            return list(handle.tools)
        if self._stack is None:
            raise RuntimeError("McpBridge must be entered (async with) before discovery")

        handle.state = ConnectionState.CONNECTING
        timeout = self._init_timeout or handle.config.init_timeout
        server_stack = AsyncExitStack()
        try:
            session = await self._session_factory(handle.config, server_stack)
            await asyncio.wait_for(session.initialize(), timeout=timeout)
            listing = await asyncio.wait_for(session.list_tools(), timeout=timeout)
        except Exception as exc:
            handle.state = ConnectionState.FAILED
            handle.last_error = f"{type(exc).__name__}: {exc}"
            logger.warning("MCP server %s (%s) unavailable: %s", handle.name, handle.endpoint, handle.last_error)
            try:
                await server_stack.aclose()
            except Exception as close_exc:
                logger.debug("Cleanup after failed MCP connect to %s raised: %s", handle.name, close_exc)
            return []
        self._stack.push_async_callback(server_stack.aclose)

        tools: list[ToolDescriptor] = []
        for tool in getattr(listing, "tools", None) or []:
            owner = self._tool_to_server.get(tool.name)
            if owner is not None:
                logger.warning("Duplicate tool %r from server %r (already from %r)", tool.name, handle.name, owner)
                continue
            self._tool_to_server[tool.name] = handle.name
            tools.append(self._descriptor(handle.name, tool))

        handle.session = session
        handle.tools = tools
        handle.last_error = None
        handle.state = ConnectionState.READY
        logger.info("MCP server %s ready with %d tools", handle.name, len(tools))
        return list(tools)

    def _descriptor(self, server_name: str, tool: Any) -> ToolDescriptor:
        tool_name = tool.name

        async def _proxy(_ctx: Any, **arguments: Any) -> ToolResult:
            return await self.call(tool_name, arguments)

        return ToolDescriptor(
            name=tool_name,
            description=getattr(tool, "description", None) or f"{tool_name} (MCP server {server_name})",
            parameters=_input_schema(tool),
            capability=Capability.NETWORK,
            handler=_proxy,
            source=f"mcp:{server_name}",
        )

    def descriptors(self) -> list[ToolDescriptor]:
        """Tools of every READY server, in server order."""
        return [d for h in self.handles.values() if h.state is ConnectionState.READY for d in h.tools]

    def server_for(self, tool_name: str) -> str | None:
        return self._tool_to_server.get(tool_name)

    async def call(self, tool_name: str, arguments: dict[str, Any], tool_call_id: str = "") -> ToolResult:
        server_name = self._tool_to_server.get(tool_name)
        if server_name is None:
            return ToolResult.failure(tool_call_id, ToolErrorKind.UNKNOWN_TOOL, f"No MCP server provides {tool_name!r}")
        handle = self.handles[server_name]
        if handle.state is not ConnectionState.READY or handle.session is None:
            return ToolResult.failure(
                tool_call_id,
                ToolErrorKind.EXECUTION_FAILED,
                f"MCP server {server_name} is {handle.state.value}",
            )
        try:
            result = await handle.session.call_tool(tool_name, arguments)
        except Exception as exc:
            logger.warning("MCP call %s on %s failed: %s", tool_name, server_name, exc)
            return ToolResult.failure(
                tool_call_id,
                ToolErrorKind.EXECUTION_FAILED,
                f"MCP server {server_name} call failed: {type(exc).__name__}: {exc}",
            )
        text = _result_text(result)
        if getattr(result, "isError", False):
            return ToolResult.failure(tool_call_id, ToolErrorKind.EXECUTION_FAILED, text or "MCP tool reported an error")
        return ToolResult.success(tool_call_id, text)
