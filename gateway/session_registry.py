"""
Conversation registry and per-conversation turn gate.

The registry owns the id -> conversation map and builds backend conversations
lazily, exactly once per id. The gate is a single-slot busy flag per
conversation: a second turn is rejected, never queued.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from loguru import logger

from .backend import AgentBackend, ConversationConfig, ConversationHandle
from .errors import BackendUnavailable, ConversationBusy
from .events import EventEmitter
from .protocol import EventType


@dataclass
class ConversationEntry:
    conversation_id: str
    handle: ConversationHandle
    created_at: datetime = field(default_factory=datetime.now)


class ConcurrencyGate:
    """Non-blocking mutual exclusion keyed by conversation id."""

    def __init__(self) -> None:
        self._busy: Set[str] = set()

    def try_acquire(self, conversation_id: str) -> bool:
        if conversation_id in self._busy:
            return False
        self._busy.add(conversation_id)
        return True

    def release(self, conversation_id: str) -> None:
        self._busy.discard(conversation_id)

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._busy

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        """Scoped acquisition; raises ConversationBusy when the slot is taken."""
        if not self.try_acquire(conversation_id):
            raise ConversationBusy(
                "Conversation is busy: wait for the previous response to finish",
                conversation_id,
            )
        try:
            yield
        finally:
            self.release(conversation_id)

    @property
    def active_count(self) -> int:
        return len(self._busy)


def _retrieve_exception(future: "asyncio.Future[Any]") -> None:
    # Creation may outlive every waiter (all of them cancelled); keep asyncio quiet.
    if not future.cancelled():
        future.exception()


class SessionRegistry:
    """Owns conversation entries and the gate guarding their turns."""

    def __init__(
        self,
        backend: AgentBackend,
        multiplexer: Optional[Any] = None,
        config_factory: Optional[Callable[[str], ConversationConfig]] = None,
        event_emitter: Optional[EventEmitter] = None,
    ) -> None:
        self.backend = backend
        self.multiplexer = multiplexer
        self.event_emitter = event_emitter
        self.gate = ConcurrencyGate()
        self._config_factory = config_factory or (lambda cid: ConversationConfig(conversation_id=cid))
        self._entries: Dict[str, ConversationEntry] = {}
        self._pending: Dict[str, "asyncio.Future[ConversationEntry]"] = {}

    def get(self, conversation_id: str) -> Optional[ConversationEntry]:
        return self._entries.get(conversation_id)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_create(self, conversation_id: str) -> ConversationEntry:
        """
        Return the entry for `conversation_id`, building it on first use.

        Overlapping callers for the same id share one in-flight creation. A
        failed creation leaves nothing behind, so the next call starts over.

        Raises:
            BackendUnavailable: the backend could not build the conversation.
        """
        entry = self._entries.get(conversation_id)
        if entry is not None:
            return entry

        pending = self._pending.get(conversation_id)
        if pending is None:
            pending = asyncio.ensure_future(self._create(conversation_id))
            pending.add_done_callback(_retrieve_exception)
            self._pending[conversation_id] = pending

        # Shielded so a disconnecting waiter does not abort creation for others.
        return await asyncio.shield(pending)

    async def _create(self, conversation_id: str) -> ConversationEntry:
        try:
            try:
                handle = await self.backend.create_conversation(
                    self._config_factory(conversation_id)
                )
                if self.multiplexer is not None:
                    self.multiplexer.attach(conversation_id, handle)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Conversation creation failed [{}]: {}", conversation_id, e)
                raise BackendUnavailable(
                    f"Failed to initialise conversation: {e}", conversation_id
                ) from e

            entry = ConversationEntry(conversation_id=conversation_id, handle=handle)
            self._entries[conversation_id] = entry
        finally:
            self._pending.pop(conversation_id, None)

        logger.info("Created conversation {}", conversation_id)
        if self.event_emitter:
            await self.event_emitter.emit(
                EventType.CONVERSATION_CREATED,
                {"conversation_id": conversation_id, "created_at": entry.created_at.isoformat()},
            )
        return entry

    def describe(self) -> List[Dict[str, Any]]:
        """Diagnostic snapshot of every conversation."""
        return [
            {
                "conversation_id": cid,
                "created_at": entry.created_at.isoformat(),
                "busy": self.gate.is_busy(cid),
            }
            for cid, entry in self._entries.items()
        ]
