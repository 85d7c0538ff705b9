"""
Output sinks: channels that receive one turn's frames and can be closed.

A sink may be closed from either side. The turn closes it after the terminal
frame; the transport closes it when the client goes away. Writes after close
are refused.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

from .protocol import Frame


_CLOSED = object()


class OutputSink(ABC):
    """Base class for a closable frame channel bound to a single turn."""

    def __init__(self) -> None:
        self._closed_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed_event.is_set()

    def write(self, frame: Frame) -> bool:
        """Deliver a frame. Returns False if the sink is already closed."""
        if self.closed:
            return False
        self._deliver(frame)
        return True

    def close(self) -> None:
        """Close the sink. Safe to call more than once."""
        if self.closed:
            return
        self._closed_event.set()
        self._on_close()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    @abstractmethod
    def _deliver(self, frame: Frame) -> None:
        ...

    def _on_close(self) -> None:
        pass


class QueueSink(OutputSink):
    """Sink drained by a streaming response (SSE generator)."""

    def __init__(self) -> None:
        super().__init__()
        self._queue: asyncio.Queue = asyncio.Queue()

    def _deliver(self, frame: Frame) -> None:
        self._queue.put_nowait(frame)

    def _on_close(self) -> None:
        self._queue.put_nowait(_CLOSED)

    async def next_frame(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """
        Wait for the next frame.

        Returns None once the sink is closed and every frame written before the
        close has been consumed. Raises asyncio.TimeoutError if `timeout`
        elapses with nothing to read.
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            # Keep the marker so later calls also see the end of stream.
            self._queue.put_nowait(_CLOSED)
            return None
        return item


class ListSink(OutputSink):
    """Sink that collects frames in memory, for non-streaming callers."""

    def __init__(self) -> None:
        super().__init__()
        self.frames: List[Frame] = []

    def _deliver(self, frame: Frame) -> None:
        self.frames.append(frame)

    @property
    def text(self) -> str:
        return "".join(f.content for f in self.frames if f.type == "delta")
