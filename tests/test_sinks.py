"""
Output sink and frame encoding tests
"""
import asyncio
import json

import pytest

from gateway.protocol import DeltaFrame, DoneFrame, GatewayProtocol
from gateway.sinks import ListSink, QueueSink


class TestQueueSink:

    @pytest.mark.asyncio
    async def test_frames_then_end_of_stream(self):
        sink = QueueSink()
        sink.write(GatewayProtocol.delta("a"))
        sink.write(GatewayProtocol.done())
        sink.close()

        assert await sink.next_frame() == DeltaFrame(content="a")
        assert await sink.next_frame() == DoneFrame()
        assert await sink.next_frame() is None
        assert await sink.next_frame() is None

    @pytest.mark.asyncio
    async def test_write_after_close_is_refused(self):
        sink = QueueSink()
        sink.close()
        sink.close()
        assert sink.write(GatewayProtocol.delta("x")) is False
        assert await sink.next_frame() is None

    @pytest.mark.asyncio
    async def test_next_frame_timeout(self):
        sink = QueueSink()
        with pytest.raises(asyncio.TimeoutError):
            await sink.next_frame(timeout=0.01)

    @pytest.mark.asyncio
    async def test_wait_closed(self):
        sink = QueueSink()
        waiter = asyncio.ensure_future(sink.wait_closed())
        await asyncio.sleep(0)
        assert not waiter.done()
        sink.close()
        await asyncio.wait_for(waiter, timeout=1)
        assert sink.closed


class TestListSink:

    @pytest.mark.asyncio
    async def test_text_joins_deltas(self):
        sink = ListSink()
        sink.write(GatewayProtocol.delta("Hel"))
        sink.write(GatewayProtocol.delta("lo"))
        sink.write(GatewayProtocol.done())
        assert sink.text == "Hello"
        assert len(sink.frames) == 3


class TestGatewayProtocol:

    def test_encode_sse(self):
        encoded = GatewayProtocol.encode_sse(GatewayProtocol.delta("Hi"))
        assert encoded.startswith("data: ")
        assert encoded.endswith("\n\n")
        assert json.loads(encoded[len("data: "):]) == {"type": "delta", "content": "Hi"}

    def test_encode_keeps_unicode(self):
        encoded = GatewayProtocol.encode_sse(GatewayProtocol.delta("héllo"))
        assert "héllo" in encoded

    def test_is_terminal(self):
        assert GatewayProtocol.is_terminal(GatewayProtocol.done())
        assert GatewayProtocol.is_terminal(GatewayProtocol.error("x"))
        assert not GatewayProtocol.is_terminal(GatewayProtocol.delta("x"))
