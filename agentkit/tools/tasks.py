"""Built-in work item tools. Handlers return placeholder data until a real store is wired up."""

from __future__ import annotations

from typing import Any, Dict, Optional

from loguru import logger

from gateway.events import EventEmitter

from .registry import ToolRegistry, define_tool


@define_tool(
    "perform_task",
    "Execute a specific task given a name and detailed instructions. "
    "Use this tool when the user asks to perform an action.",
    {
        "type": "object",
        "properties": {
            "taskName": {"type": "string", "description": "Short name describing the task"},
            "instructions": {"type": "string", "description": "Detailed instructions for the task"},
            "priority": {
                "type": "string",
                "enum": ["low", "medium", "high"],
                "description": "Priority level of the task",
            },
        },
        "required": ["taskName", "instructions"],
    },
)
async def perform_task(args: Dict[str, Any]) -> Dict[str, Any]:
    priority = args.get("priority") or "medium"
    logger.info('Executing task: "{}" [{}]', args["taskName"], priority)
    logger.debug("Instructions: {}", args["instructions"])
    return {
        "status": "completed",
        "taskName": args["taskName"],
        "priority": priority,
        "result": f'Task "{args["taskName"]}" has been processed successfully.',
    }


@define_tool(
    "lookup_info",
    "Look up information from the knowledge base on a given topic. "
    "Use this when the user asks a factual question about something specific.",
    {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query or topic to look up"},
        },
        "required": ["query"],
    },
)
async def lookup_info(args: Dict[str, Any]) -> Dict[str, Any]:
    logger.info('Looking up: "{}"', args["query"])
    return {
        "query": args["query"],
        "results": [
            {
                "title": f'Information about "{args["query"]}"',
                "summary": "This is a placeholder result. Connect your own data source here.",
            }
        ],
    }


@define_tool(
    "list_tasks",
    "List all pending or completed tasks tracked by the agent. "
    "Use this when the user wants to see task status.",
    {
        "type": "object",
        "properties": {
            "status": {
                "type": "string",
                "enum": ["all", "pending", "completed"],
                "description": "Filter tasks by status",
            },
        },
    },
)
async def list_tasks(args: Dict[str, Any]) -> Dict[str, Any]:
    status_filter = args.get("status") or "all"
    logger.info("Listing tasks (filter: {})", status_filter)
    return {
        "filter": status_filter,
        "tasks": [{"id": 1, "name": "Example task", "status": "pending", "priority": "medium"}],
        "message": "Connect a real task store to persist and manage tasks.",
    }


BUILTIN_TOOLS = (perform_task, lookup_info, list_tasks)


def build_default_registry(event_emitter: Optional[EventEmitter] = None) -> ToolRegistry:
    registry = ToolRegistry(event_emitter=event_emitter)
    for tool in BUILTIN_TOOLS:
        registry.register(tool)
    return registry
