"""
Test configuration and shared fixtures
"""
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to the path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

import pytest
from unittest.mock import MagicMock

from gateway.backend import ConversationConfig, DeltaEvent


class FakeHandle:
    """Scripted conversation handle: emits `deltas`, optionally waits on `release`, then returns."""

    def __init__(self, conversation_id: str, deltas: Optional[List[str]] = None):
        self.conversation_id = conversation_id
        self.deltas = list(deltas) if deltas is not None else ["Hel", "lo"]
        self.delay = 0.0
        self.error: Optional[BaseException] = None
        self.release: Optional[asyncio.Event] = None
        self.late_deltas: List[str] = []
        self.submissions: List[str] = []
        self.completed: List[str] = []
        self.cancelled = False
        self._listeners = []

    def on_delta(self, callback):
        self._listeners.append(callback)

    def emit(self, content: str, turn_id: Optional[str] = None):
        for callback in self._listeners:
            callback(DeltaEvent(content=content, turn_id=turn_id))

    async def submit(self, utterance: str, timeout=None, turn_id=None) -> str:
        self.submissions.append(utterance)
        try:
            for chunk in self.deltas:
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.emit(chunk, turn_id)
            if self.release is not None:
                await self.release.wait()
            for chunk in self.late_deltas:
                self.emit(chunk, turn_id)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        self.completed.append(utterance)
        return "".join(self.deltas)


class FakeBackend:
    """Backend double counting conversation constructions."""

    def __init__(self, deltas: Optional[List[str]] = None, fail_times: int = 0, create_delay: float = 0.0):
        self.deltas = deltas
        self.fail_times = fail_times
        self.create_delay = create_delay
        self.created = 0
        self.configs: List[ConversationConfig] = []
        self.handles = {}

    async def create_conversation(self, config: ConversationConfig) -> FakeHandle:
        self.configs.append(config)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("backend offline")
        self.created += 1
        handle = FakeHandle(config.conversation_id, self.deltas)
        self.handles[config.conversation_id] = handle
        return handle


@pytest.fixture
def project_root_path():
    """Project root directory"""
    return Path(__file__).resolve().parent.parent


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def mock_event_emitter():
    """Mock event emitter"""
    emitter = MagicMock()
    emitter.on = MagicMock()
    emitter.off = MagicMock()

    async def _emit(event, payload):
        emitter.emitted.append((event, payload))

    emitter.emitted = []
    emitter.emit = _emit
    return emitter
