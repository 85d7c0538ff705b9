"""
OpenAI-compatible agent backend.

Each conversation keeps its own message history, streams assistant tokens to
its delta listeners, and runs native function calls against the tool registry
until the model produces a final answer.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional, Set, Tuple

from loguru import logger
from openai import AsyncOpenAI

from agentkit.tools.registry import ToolInvocationContext, ToolRegistry
from config import APIConfig, config
from gateway.backend import ConversationConfig, DeltaCallback, DeltaEvent


class OpenAIConversation:
    """One backend conversation. Turns on the same conversation run one at a time."""

    def __init__(
        self,
        conversation_id: str,
        client: AsyncOpenAI,
        model: str,
        system_prompt: Optional[str] = None,
        tools: Optional[ToolRegistry] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        max_tool_rounds: int = 8,
    ):
        self.conversation_id = conversation_id
        self.client = client
        self.model = model
        self.tools = tools
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_tool_rounds = max_tool_rounds
        self.history: List[Dict[str, Any]] = []
        if system_prompt:
            self.history.append({"role": "system", "content": system_prompt})
        self._listeners: List[DeltaCallback] = []
        self._lock = asyncio.Lock()
        self._pending: Set["asyncio.Task[str]"] = set()

    def on_delta(self, callback: DeltaCallback) -> None:
        self._listeners.append(callback)

    def _emit(self, content: str, turn_id: Optional[str]) -> None:
        event = DeltaEvent(content=content, turn_id=turn_id)
        for callback in self._listeners:
            try:
                callback(event)
            except Exception as e:
                logger.error("Delta listener failed [{}]: {}", self.conversation_id[:8], e)

    async def submit(
        self,
        utterance: str,
        timeout: Optional[float] = None,
        turn_id: Optional[str] = None,
    ) -> str:
        """
        Run one turn and return the final assistant text.

        When `timeout` expires the caller gets `asyncio.TimeoutError` but the
        turn itself keeps running to completion and stays in the history.
        """
        if self._lock.locked():
            logger.info(
                "[{}] Turn {} queued behind an unfinished backend call",
                self.conversation_id[:8], turn_id,
            )
        task = asyncio.ensure_future(self._locked_turn(utterance, turn_id))
        self._pending.add(task)
        task.add_done_callback(self._settle)
        if timeout:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        return await task

    def _settle(self, task: "asyncio.Task[str]") -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("[{}] Backend turn ended with {!r}", self.conversation_id[:8], task.exception())

    async def _locked_turn(self, utterance: str, turn_id: Optional[str]) -> str:
        async with self._lock:
            return await self._run_turn(utterance, turn_id)

    async def _run_turn(self, utterance: str, turn_id: Optional[str]) -> str:
        snapshot = len(self.history)
        self.history.append({"role": "user", "content": utterance})
        try:
            for _ in range(self.max_tool_rounds):
                content, tool_calls = await self._stream_completion(turn_id)
                message: Dict[str, Any] = {"role": "assistant", "content": content or None}
                if tool_calls:
                    message["tool_calls"] = [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {"name": call["name"], "arguments": call["arguments"]},
                        }
                        for call in tool_calls
                    ]
                self.history.append(message)
                if not tool_calls:
                    return content

                for call in tool_calls:
                    result = await self._run_tool(call, turn_id)
                    self.history.append(
                        {
                            "role": "tool",
                            "tool_call_id": call["id"],
                            "content": json.dumps(result, ensure_ascii=False, default=str),
                        }
                    )
            raise RuntimeError(f"Tool call limit reached ({self.max_tool_rounds} rounds)")
        except BaseException:
            # A failed or cancelled turn leaves no half-written exchange behind.
            del self.history[snapshot:]
            raise

    async def _stream_completion(self, turn_id: Optional[str]) -> Tuple[str, List[Dict[str, str]]]:
        params: Dict[str, Any] = {
            "model": self.model,
            "messages": self.history,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        schemas = self.tools.openai_schemas() if self.tools else []
        if schemas:
            params["tools"] = schemas

        stream = await self.client.chat.completions.create(**params)
        parts: List[str] = []
        calls: Dict[int, Dict[str, str]] = {}
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                parts.append(delta.content)
                self._emit(delta.content, turn_id)
            for tc in delta.tool_calls or []:
                slot = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                if tc.id:
                    slot["id"] = tc.id
                if tc.function:
                    if tc.function.name:
                        slot["name"] += tc.function.name
                    if tc.function.arguments:
                        slot["arguments"] += tc.function.arguments
        return "".join(parts), [calls[i] for i in sorted(calls)]

    async def _run_tool(self, call: Dict[str, str], turn_id: Optional[str]) -> Any:
        if not self.tools:
            return {"error": "No tools are available"}
        try:
            args = json.loads(call["arguments"] or "{}")
        except json.JSONDecodeError as e:
            return {"error": f"Invalid JSON arguments: {e}"}
        if not isinstance(args, dict):
            return {"error": "Tool arguments must be a JSON object"}

        ctx = ToolInvocationContext(
            conversation_id=self.conversation_id, turn_id=turn_id, source="openai"
        )
        try:
            return await self.tools.call(call["name"], args, ctx)
        except Exception as e:
            # Reported back to the model; a failing tool does not fail the turn.
            return {"error": str(e)}


class OpenAIAgentBackend:
    """Builds OpenAI-backed conversations sharing one client."""

    def __init__(
        self,
        api_config: Optional[APIConfig] = None,
        tools: Optional[ToolRegistry] = None,
        system_prompt: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api = api_config or config.api
        self.tools = tools
        if system_prompt is None:
            system_prompt = config.prompts.gateway_prompt()
        self.system_prompt = system_prompt
        if client is None:
            client_kwargs: Dict[str, Any] = {
                "api_key": self.api.api_key,
                "base_url": self.api.base_url.rstrip("/") + "/",
            }
            if self.api.request_timeout_s:
                client_kwargs["timeout"] = self.api.request_timeout_s
            client = AsyncOpenAI(**client_kwargs)
        self.client = client

    async def create_conversation(self, cfg: ConversationConfig) -> OpenAIConversation:
        if not self.api.api_key or self.api.api_key == "placeholder-key-not-set":
            raise RuntimeError("API key is not configured (set API__API_KEY)")
        conversation = OpenAIConversation(
            conversation_id=cfg.conversation_id,
            client=self.client,
            model=cfg.model or self.api.model,
            system_prompt=cfg.system_prompt if cfg.system_prompt is not None else self.system_prompt,
            tools=self.tools,
            temperature=self.api.temperature,
            max_tokens=self.api.max_tokens,
            max_tool_rounds=self.api.max_tool_rounds,
        )
        logger.debug("Backend conversation ready [{}] model={}", cfg.conversation_id[:8], conversation.model)
        return conversation

    async def close(self) -> None:
        await self.client.close()
