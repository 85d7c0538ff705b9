"""
Tool registry.

Named, schema-validated capabilities the agent backend may call mid-turn.
Each call is validated against the tool's JSON schema and its lifecycle is
published on the gateway event bus (start / result / error).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import jsonschema
from loguru import logger

from gateway.events import EventEmitter
from gateway.protocol import EventType


ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class ToolInvocationContext:
    """
    Context for one tool call.

    - conversation_id: the conversation whose turn triggered the call
    - turn_id: the turn in progress
    - source: caller (backend name, cli, ...)
    """

    conversation_id: Optional[str] = None
    turn_id: Optional[str] = None
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler
    # "builtin" or "mcp:<server>"
    source: str = "builtin"

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def define_tool(name: str, description: str, parameters: Dict[str, Any]):
    """Decorator turning a handler function into a Tool."""

    def wrap(handler: ToolHandler) -> Tool:
        jsonschema.Draft7Validator.check_schema(parameters)
        return Tool(name=name, description=description, parameters=parameters, handler=handler)

    return wrap


class ToolRegistry:
    """
    Tool registry (single entry point the backend calls into).

    - register / unregister / look up tools
    - validate arguments against each tool's JSON schema
    - emit TOOL_CALL_* events on the EventEmitter
    """

    def __init__(self, event_emitter: Optional[EventEmitter] = None) -> None:
        self.event_emitter = event_emitter
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool already registered: {}, will overwrite", tool.name)
        self._tools[tool.name] = tool
        logger.info("Registered tool: {}", tool.name)

    def unregister(self, name: str) -> None:
        if self._tools.pop(name, None) is not None:
            logger.info("Unregistered tool: {}", name)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list_tools(self) -> Dict[str, Any]:
        tools: List[Dict[str, Any]] = [
            {
                "name": t.name,
                "description": t.description,
                "parameters": t.parameters,
                "source": t.source,
            }
            for t in self._tools.values()
        ]
        return {"tools": tools, "total": len(tools)}

    def openai_schemas(self) -> List[Dict[str, Any]]:
        return [t.to_openai() for t in self._tools.values()]

    async def call(
        self,
        name: str,
        args: Dict[str, Any],
        ctx: Optional[ToolInvocationContext] = None,
    ) -> Dict[str, Any]:
        """
        Invoke a tool.

        Unknown tools and invalid arguments come back as `{"error": ...}` so the
        model can correct itself; exceptions raised by the handler propagate.
        """
        base = {
            "tool_name": name,
            "conversation_id": ctx.conversation_id if ctx else None,
            "turn_id": ctx.turn_id if ctx else None,
        }

        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Unknown tool requested: {}", name)
            return {"error": f"Unknown tool: {name}"}

        try:
            jsonschema.validate(instance=args, schema=tool.parameters)
        except jsonschema.ValidationError as e:
            logger.warning("Invalid arguments for {}: {}", name, e.message)
            await self._emit_event(EventType.TOOL_CALL_ERROR, {**base, "error": e.message})
            return {"error": f"Schema validation failed: {e.message}"}

        await self._emit_event(EventType.TOOL_CALL_START, {**base, "args": args})
        try:
            result = tool.handler(args)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as e:
            logger.error("Tool invocation failed [{}]: {}", name, e)
            await self._emit_event(EventType.TOOL_CALL_ERROR, {**base, "error": str(e)})
            raise

        await self._emit_event(EventType.TOOL_CALL_RESULT, {**base, "result": result})
        return result

    async def _emit_event(self, event: EventType, payload: Dict[str, Any]) -> None:
        if not self.event_emitter:
            return
        await self.event_emitter.emit(event, payload)
