"""
MCP server tool sourcing.

Each configured server is started over stdio, its tool list is read once, and
every exposed tool is registered into the ToolRegistry with a handler that
forwards the call to the server.
"""
import asyncio
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger
from mcp import ClientSession, StdioServerParameters, stdio_client

from agentkit.tools.registry import Tool, ToolRegistry
from config import MCPConfig, MCPServerConfig


SessionFactory = Callable[[str, MCPServerConfig, AsyncExitStack], Awaitable[Any]]


async def open_stdio_session(
    service_name: str, server: MCPServerConfig, exit_stack: AsyncExitStack
) -> ClientSession:
    params = StdioServerParameters(command=server.command, args=server.args, env=server.env)
    read, write = await exit_stack.enter_async_context(stdio_client(params))
    session = await exit_stack.enter_async_context(ClientSession(read, write))
    await session.initialize()
    return session


class MCPManager:

    def __init__(self, mcp_config: MCPConfig, session_factory: Optional[SessionFactory] = None):
        self.config = mcp_config
        self.services: Dict[str, Any] = {}
        self.tools_cache: Dict[str, list] = {}
        self.exit_stack = AsyncExitStack()
        self._session_factory = session_factory or open_stdio_session
        logger.info("MCPManager initialized ({} servers configured)", len(mcp_config.servers))

    async def connect_service(self, service_name: str):
        if service_name in self.services:
            return self.services[service_name]
        server = self.config.servers.get(service_name)
        if server is None:
            logger.warning("MCP service not found: {}", service_name)
            return None

        try:
            logger.info("Connecting MCP service: {} ({} {})", service_name, server.command, " ".join(server.args))
            session = await self._session_factory(service_name, server, self.exit_stack)
        except Exception as e:
            logger.error("MCP service {} connection failed: {}", service_name, e)
            return None

        self.services[service_name] = session
        logger.info("MCP service {} connected", service_name)
        return session

    async def get_service_tools(self, service_name: str) -> list:
        if service_name in self.tools_cache:
            return self.tools_cache[service_name]
        session = await self.connect_service(service_name)
        if session is None:
            return []

        try:
            response = await session.list_tools()
        except Exception as e:
            logger.error("Failed to list tools for MCP service {}: {}", service_name, e)
            return []

        allowed = self.config.servers[service_name].tools
        tools = [t for t in response.tools if "*" in allowed or t.name in allowed]
        self.tools_cache[service_name] = tools
        return tools

    async def call_service_tool(self, service_name: str, tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call one server tool and flatten its result for the model.

        Raises RuntimeError when the server is gone or reports a tool error, and
        asyncio.TimeoutError past the server's `timeout_s`.
        """
        session = await self.connect_service(service_name)
        if session is None:
            raise RuntimeError(f"MCP service {service_name} is not connected")

        timeout = self.config.servers[service_name].timeout_s
        logger.debug("Calling MCP tool {}.{} with args: {}", service_name, tool_name, args)
        result = await asyncio.wait_for(session.call_tool(tool_name, args), timeout)

        text = "\n".join(
            item.text for item in (result.content or []) if getattr(item, "type", None) == "text"
        )
        if getattr(result, "isError", False):
            raise RuntimeError(text or f"MCP tool {tool_name} failed")

        payload: Dict[str, Any] = {"service": service_name, "content": text}
        structured = getattr(result, "structuredContent", None)
        if structured:
            payload["structured"] = structured
        return payload

    def _as_tool(self, service_name: str, mcp_tool: Any) -> Tool:
        async def handler(args: Dict[str, Any]) -> Dict[str, Any]:
            return await self.call_service_tool(service_name, mcp_tool.name, args)

        return Tool(
            name=mcp_tool.name,
            description=mcp_tool.description or f"{mcp_tool.name} ({service_name} MCP server)",
            parameters=mcp_tool.inputSchema or {"type": "object", "properties": {}},
            handler=handler,
            source=f"mcp:{service_name}",
        )

    async def register_tools(self, registry: ToolRegistry) -> List[str]:
        """Connect every enabled server and register its tools; returns the tool names added."""
        added: List[str] = []
        if not self.config.enabled:
            logger.info("MCP tool sourcing disabled")
            return added

        for service_name, server in self.config.servers.items():
            if not server.enabled:
                continue
            for mcp_tool in await self.get_service_tools(service_name):
                if mcp_tool.name in registry:
                    logger.warning(
                        "MCP tool {} from {} shadows an existing tool, skipped",
                        mcp_tool.name, service_name,
                    )
                    continue
                registry.register(self._as_tool(service_name, mcp_tool))
                added.append(mcp_tool.name)
        logger.info("Registered {} MCP tools", len(added))
        return added

    async def clean_services(self) -> None:
        logger.info("Cleaning MCP service runtime")
        try:
            await self.exit_stack.aclose()
        except Exception as e:
            logger.error("Failed to clean MCP services: {}", e)
        self.services.clear()
        self.tools_cache.clear()
