"""
Routes backend output to the sink currently bound for each conversation.

Each conversation handle gets one delta subscription for its whole lifetime
(`attach`). Turns bind and unbind sinks around themselves; the bridge only
does a keyed lookup per event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Dict, Optional

from loguru import logger

from .backend import ConversationHandle, DeltaEvent
from .errors import SinkAlreadyBound
from .protocol import GatewayProtocol
from .sinks import OutputSink


@dataclass
class SinkBinding:
    conversation_id: str
    sink: OutputSink
    turn_id: Optional[str] = None
    bound_at: datetime = field(default_factory=datetime.now)
    forwarded: int = 0


class ResponseMultiplexer:
    """Owns the conversation id -> active sink map and the event bridge."""

    def __init__(self) -> None:
        self._bindings: Dict[str, SinkBinding] = {}
        self.forwarded_total = 0
        self.dropped_total = 0

    def bind(
        self,
        conversation_id: str,
        sink: OutputSink,
        turn_id: Optional[str] = None,
    ) -> SinkBinding:
        if conversation_id in self._bindings:
            raise SinkAlreadyBound(
                f"Sink already bound for conversation {conversation_id}",
                conversation_id,
            )
        binding = SinkBinding(conversation_id=conversation_id, sink=sink, turn_id=turn_id)
        self._bindings[conversation_id] = binding
        return binding

    def unbind(self, conversation_id: str) -> Optional[SinkBinding]:
        return self._bindings.pop(conversation_id, None)

    def get(self, conversation_id: str) -> Optional[OutputSink]:
        binding = self._bindings.get(conversation_id)
        return binding.sink if binding else None

    def is_bound(self, conversation_id: str) -> bool:
        return conversation_id in self._bindings

    @property
    def active_count(self) -> int:
        return len(self._bindings)

    def attach(self, conversation_id: str, handle: ConversationHandle) -> None:
        """Install the permanent delta subscription for a new handle."""
        handle.on_delta(partial(self.forward, conversation_id))

    def forward(self, conversation_id: str, event: DeltaEvent) -> bool:
        """
        Forward one delta to the bound sink.

        Events with no bound or open sink are dropped: a disconnect can race
        the backend's remaining output. Events tagged for another turn are
        dropped as well.
        """
        binding = self._bindings.get(conversation_id)
        if binding is None or binding.sink.closed:
            self.dropped_total += 1
            logger.debug("Dropped delta for {} (no open sink)", conversation_id)
            return False
        if event.turn_id and binding.turn_id and event.turn_id != binding.turn_id:
            self.dropped_total += 1
            logger.debug(
                "Dropped stale delta for {} (turn {} != {})",
                conversation_id,
                event.turn_id,
                binding.turn_id,
            )
            return False

        if not binding.sink.write(GatewayProtocol.delta(event.content)):
            self.dropped_total += 1
            return False
        binding.forwarded += 1
        self.forwarded_total += 1
        return True
