"""
OpenAI backend tests with a scripted streaming client
"""
import asyncio
import json
from types import SimpleNamespace

import pytest
from loguru import logger

from agentkit.tools.tasks import build_default_registry
from config import APIConfig
from conversation_core import OpenAIAgentBackend, OpenAIConversation
from gateway.backend import ConversationConfig


def _chunk(content=None, tool_calls=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def _tool_call(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments)
    )


class _Stream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        await asyncio.sleep(0)
        return self._chunks.pop(0)


class _SlowStream:
    """Yields one chunk, then keeps the turn open for `delay` seconds."""

    def __init__(self, state, delay=0.2):
        self.state = state
        self.delay = delay

    def __aiter__(self):
        return self._chunks()

    async def _chunks(self):
        yield _chunk("partial")
        await asyncio.sleep(self.delay)
        self.state["finished"] = True


class FakeCompletions:
    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.calls = []

    async def create(self, **params):
        self.calls.append({**params, "messages": list(params["messages"])})
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        if callable(script):
            return script()
        return _Stream(script)


class FakeClient:
    def __init__(self, scripts):
        self.chat = SimpleNamespace(completions=FakeCompletions(scripts))
        self.closed = False

    async def close(self):
        self.closed = True


def _conversation(scripts, tools=None, **kwargs):
    client = FakeClient(scripts)
    conv = OpenAIConversation(
        "conv-1", client, model="test-model", system_prompt="be brief", tools=tools, **kwargs
    )
    deltas = []
    conv.on_delta(deltas.append)
    return conv, client, deltas


class TestOpenAIConversation:

    @pytest.mark.asyncio
    async def test_streams_deltas_and_records_history(self):
        conv, client, deltas = _conversation([[_chunk("Hel"), _chunk("lo")]])

        result = await conv.submit("hi", turn_id="t1")

        assert result == "Hello"
        assert [d.content for d in deltas] == ["Hel", "lo"]
        assert all(d.turn_id == "t1" for d in deltas)
        assert [m["role"] for m in conv.history] == ["system", "user", "assistant"]
        assert client.chat.completions.calls[0]["stream"] is True
        assert "tools" not in client.chat.completions.calls[0]

    @pytest.mark.asyncio
    async def test_tool_round_trip(self):
        scripts = [
            [
                _chunk(tool_calls=[_tool_call(0, id="call_1", name="lookup_", arguments='{"que')]),
                _chunk(tool_calls=[_tool_call(0, name="info", arguments='ry": "velocity"}')]),
            ],
            [_chunk("Velocity is fine.")],
        ]
        conv, client, deltas = _conversation(scripts, tools=build_default_registry())

        result = await conv.submit("how is velocity?")

        assert result == "Velocity is fine."
        first_call = client.chat.completions.calls[0]
        assert {t["function"]["name"] for t in first_call["tools"]} == {
            "perform_task", "lookup_info", "list_tasks"
        }
        tool_message = conv.history[-2]
        assert tool_message["role"] == "tool"
        assert tool_message["tool_call_id"] == "call_1"
        assert json.loads(tool_message["content"])["query"] == "velocity"
        assert conv.history[2]["tool_calls"][0]["function"]["name"] == "lookup_info"

    @pytest.mark.asyncio
    async def test_bad_tool_arguments_are_reported_to_model(self):
        scripts = [
            [_chunk(tool_calls=[_tool_call(0, id="c", name="lookup_info", arguments="{oops")])],
            [_chunk("Sorry.")],
        ]
        conv, _, _ = _conversation(scripts, tools=build_default_registry())
        await conv.submit("x")
        assert "Invalid JSON arguments" in json.loads(conv.history[-2]["content"])["error"]

    @pytest.mark.asyncio
    async def test_failed_turn_rolls_back_history(self):
        conv, _, _ = _conversation([RuntimeError("rate limited")])
        with pytest.raises(RuntimeError):
            await conv.submit("hi")
        assert [m["role"] for m in conv.history] == ["system"]

    @pytest.mark.asyncio
    async def test_tool_round_limit(self):
        loop_call = [_chunk(tool_calls=[_tool_call(0, id="c", name="list_tasks", arguments="{}")])]
        conv, _, _ = _conversation([loop_call, loop_call], tools=build_default_registry(), max_tool_rounds=2)
        with pytest.raises(RuntimeError, match="Tool call limit"):
            await conv.submit("loop")
        assert len(conv.history) == 1

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_break_turn(self):
        conv, _, deltas = _conversation([[_chunk("ok")]])

        def broken(event):
            raise ValueError("listener bug")

        conv.on_delta(broken)
        assert await conv.submit("hi") == "ok"
        assert len(deltas) == 1

    @pytest.mark.asyncio
    async def test_timeout_leaves_turn_running(self):
        state = {}
        conv, _, deltas = _conversation([lambda: _SlowStream(state)])

        with pytest.raises(asyncio.TimeoutError):
            await conv.submit("q", timeout=0.05)
        assert "finished" not in state

        await asyncio.sleep(0.4)
        assert state["finished"] is True
        assert [d.content for d in deltas] == ["partial"]
        assert conv.history[-2:] == [
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "partial"},
        ]

    @pytest.mark.asyncio
    async def test_turn_waiting_on_previous_call_is_logged(self):
        state = {}
        conv, _, _ = _conversation([lambda: _SlowStream(state), [_chunk("second")]])
        messages = []
        handler_id = logger.add(messages.append, level="INFO", format="{message}")
        try:
            first = asyncio.ensure_future(conv.submit("one", turn_id="t1"))
            await asyncio.sleep(0.05)
            assert await conv.submit("two", turn_id="t2") == "second"
            assert await first == "partial"
        finally:
            logger.remove(handler_id)

        assert any("t2 queued behind an unfinished backend call" in m for m in messages)
        assert [m["content"] for m in conv.history if m["role"] == "user"] == ["one", "two"]


class TestOpenAIAgentBackend:

    @pytest.mark.asyncio
    async def test_create_conversation(self):
        api = APIConfig(api_key="sk-test", model="gpt-test")
        client = FakeClient([])
        backend = OpenAIAgentBackend(api_config=api, system_prompt="sys", client=client)

        conv = await backend.create_conversation(ConversationConfig(conversation_id="c1"))

        assert conv.model == "gpt-test"
        assert conv.history[0] == {"role": "system", "content": "sys"}
        await backend.close()
        assert client.closed

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        api = APIConfig(api_key="placeholder-key-not-set")
        backend = OpenAIAgentBackend(api_config=api, client=FakeClient([]))
        with pytest.raises(RuntimeError, match="API key"):
            await backend.create_conversation(ConversationConfig(conversation_id="c1"))
