"""
Tool runtime backed by MCP (Model Context Protocol) servers.

Connects to any number of MCP servers and exposes their tools through the
`ToolRuntime` contract used by the provider clients:

```python
from chatmux.mcp_runtime import MCPToolRuntime

async with MCPToolRuntime() as runtime:
    await runtime.connect_stdio(
        name="fs",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
    )
    result = await client.send_prompt("List /tmp", [], tool_runtime=runtime)
```

Spawning and vetting server processes is the caller's responsibility.
"""

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, TypedDict

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import TextContent as MCPTextContent

from .types import ToolDefinition

logger = logging.getLogger(__name__)

TransportType = Literal["stdio", "streamable-http"]


class MCPServerConfig(TypedDict, total=False):
    """
    Connection settings for one MCP server.

    Fields:
        name: Unique connection name (also the `server_name` of its tools)
        transport: "stdio" (default) or "streamable-http"
        command, args, env: Subprocess settings for stdio
        url, headers: Endpoint settings for streamable HTTP
    """
    name: str
    transport: TransportType
    command: str
    args: List[str]
    env: Dict[str, str]
    url: str
    headers: Dict[str, str]


@dataclass
class MCPConnection:
    name: str
    session: ClientSession
    tools: List[ToolDefinition] = field(default_factory=list)


class MCPToolRuntime:
    """
    Routes tool calls to the MCP server that advertised the tool.

    Must be used as an async context manager; the exit stack owns every
    transport and session and closes them in reverse order.
    """

    def __init__(self):
        self._connections: Dict[str, MCPConnection] = {}
        self._tool_map: Dict[str, str] = {}
        self._exit_stack: Optional[AsyncExitStack] = None

    async def __aenter__(self) -> "MCPToolRuntime":
        self._exit_stack = AsyncExitStack()
        await self._exit_stack.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._exit_stack:
            await self._exit_stack.__aexit__(exc_type, exc_val, exc_tb)
            self._exit_stack = None
        self._connections.clear()
        self._tool_map.clear()

    @property
    def connections(self) -> Dict[str, MCPConnection]:
        return self._connections

    @property
    def tool_names(self) -> List[str]:
        return list(self._tool_map.keys())

    def _ensure_context(self) -> None:
        if self._exit_stack is None:
            raise RuntimeError(
                "MCPToolRuntime must be used as an async context manager: "
                "async with MCPToolRuntime() as runtime: ..."
            )

    # ==========================================================================
    # Connections
    # ==========================================================================

    async def connect_stdio(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> MCPConnection:
        """
        Start an MCP server as a subprocess and talk to it over stdin/stdout.

        Raises:
            ValueError: A connection with this name already exists.
            RuntimeError: Not inside the async context.
        """
        self._ensure_context()
        if name in self._connections:
            raise ValueError(f"Connection '{name}' already exists")

        server_params = StdioServerParameters(command=command, args=args or [], env=env)
        read_stream, write_stream = await self._exit_stack.enter_async_context(
            stdio_client(server_params)
        )
        return await self._open_session(name, read_stream, write_stream)

    async def connect_http(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> MCPConnection:
        """
        Connect to a streamable-HTTP MCP server.
        """
        self._ensure_context()
        if name in self._connections:
            raise ValueError(f"Connection '{name}' already exists")

        read_stream, write_stream, _ = await self._exit_stack.enter_async_context(
            streamablehttp_client(url, headers=headers)
        )
        return await self._open_session(name, read_stream, write_stream)

    async def connect(self, config: MCPServerConfig) -> MCPConnection:
        """
        Connect using a configuration mapping (see MCPServerConfig).
        """
        transport = config.get("transport", "stdio")
        name = config["name"]

        if transport == "stdio":
            return await self.connect_stdio(
                name=name,
                command=config["command"],
                args=config.get("args"),
                env=config.get("env"),
            )
        elif transport == "streamable-http":
            return await self.connect_http(
                name=name,
                url=config["url"],
                headers=config.get("headers"),
            )
        else:
            raise ValueError(f"Unsupported transport: {transport}")

    async def _open_session(self, name: str, read_stream, write_stream) -> MCPConnection:
        session = await self._exit_stack.enter_async_context(
            ClientSession(read_stream, write_stream)
        )
        await session.initialize()

        tools_response = await session.list_tools()
        tools = self._convert_mcp_tools(tools_response.tools, name)
        for tool in tools:
            self._tool_map[tool["name"]] = name

        connection = MCPConnection(name=name, session=session, tools=tools)
        self._connections[name] = connection
        logger.info("Connected to MCP server %s (%d tools)", name, len(tools))
        return connection

    @staticmethod
    def _convert_mcp_tools(mcp_tools: List[Any], server_name: str) -> List[ToolDefinition]:
        return [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.inputSchema or {"type": "object", "properties": {}},
                "server_name": server_name,
            }
            for tool in mcp_tools
        ]

    # ==========================================================================
    # ToolRuntime
    # ==========================================================================

    async def get_all_tools(self) -> List[ToolDefinition]:
        all_tools: List[ToolDefinition] = []
        for conn in self._connections.values():
            all_tools.extend(conn.tools)
        return all_tools

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> str:
        """
        Execute a tool on the server that provides it.

        Returns:
            str: Text content of the result, one line per content item.

        Raises:
            ValueError: No connected server provides the tool.
            RuntimeError: The server reported the call as failed.
        """
        if name not in self._tool_map:
            raise ValueError(f"Tool '{name}' not found in any connected server")

        conn = self._connections[self._tool_map[name]]
        result = await conn.session.call_tool(name, arguments)

        texts = []
        for content in result.content or []:
            if isinstance(content, MCPTextContent):
                texts.append(content.text)
            elif hasattr(content, "text"):
                texts.append(content.text)
            else:
                texts.append(str(content))
        text = "\n".join(texts)

        if getattr(result, "isError", False):
            raise RuntimeError(text or f"Tool '{name}' failed")
        return text
