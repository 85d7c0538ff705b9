"""
Agent backend contract consumed by the gateway.

The gateway never talks to a model directly. It asks a backend for a
conversation handle, subscribes to the handle's delta events once, and then
submits turns to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol


@dataclass
class DeltaEvent:
    """One piece of incremental assistant output."""

    content: str
    turn_id: Optional[str] = None


@dataclass
class ConversationConfig:
    """Options used when a backend conversation is constructed."""

    conversation_id: str
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    streaming: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


DeltaCallback = Callable[[DeltaEvent], None]


class ConversationHandle(Protocol):
    """A live exchange with the agent backend that keeps its own history."""

    def on_delta(self, callback: DeltaCallback) -> None:  # pragma: no cover - protocol
        ...

    async def submit(
        self,
        utterance: str,
        timeout: Optional[float] = None,
        turn_id: Optional[str] = None,
    ) -> Any:  # pragma: no cover - protocol
        ...


class AgentBackend(Protocol):
    """Factory for conversation handles."""

    async def create_conversation(self, config: ConversationConfig) -> ConversationHandle:  # pragma: no cover - protocol
        ...
