from __future__ import annotations
import asyncio
import re
import time
import uuid
from typing import Any, Callable, Optional, Set, Tuple

from loguru import logger

from .backend import AgentBackend, ConversationConfig
from .errors import (
    BackendTurnError,
    BackendUnavailable,
    ConversationBusy,
    GatewayError,
    SinkAlreadyBound,
    TurnTimeout,
)
from .events import EventEmitter
from .multiplexer import ResponseMultiplexer
from .protocol import (
    EventType,
    GatewayProtocol,
    TerminalReason,
    TurnOutcome,
    TurnState,
)
from .session_registry import ConversationEntry, SessionRegistry
from .sinks import OutputSink


_CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


class ConversationService:
    """
    Gateway conversation orchestration service.

    Opens conversations and runs turns: gate, bind sink, submit to the
    backend handle, stream deltas, finalize. Every exit path unbinds the sink
    and releases the gate.
    """

    def __init__(
        self,
        backend: AgentBackend,
        turn_timeout_s: float = 300.0,
        config_factory: Optional[Callable[[str], ConversationConfig]] = None,
        event_emitter: Optional[EventEmitter] = None,
        metrics: Optional[Any] = None,
    ) -> None:
        self.event_emitter = event_emitter
        self.metrics = metrics
        self.turn_timeout_s = turn_timeout_s
        self.multiplexer = ResponseMultiplexer()
        self.registry = SessionRegistry(
            backend,
            multiplexer=self.multiplexer,
            config_factory=config_factory,
            event_emitter=event_emitter,
        )
        self._turn_tasks: Set[asyncio.Task] = set()
        self._abandoned: Set[asyncio.Future] = set()

        logger.info("ConversationService: Initialized (turn timeout {}s)", turn_timeout_s)

    # ===== Conversations =====

    @staticmethod
    def new_conversation_id() -> str:
        return uuid.uuid4().hex

    @staticmethod
    def validate_conversation_id(conversation_id: str) -> str:
        value = (conversation_id or "").strip()
        if not _CONVERSATION_ID_RE.match(value):
            raise ValueError(
                "conversation id must be 1-128 characters of letters, digits, '_', '.', ':' or '-'"
            )
        return value

    async def open_conversation(self, conversation_id: Optional[str] = None) -> str:
        """
        Allocate (or validate) a conversation id and build its backend handle.

        Raises:
            ValueError: the supplied id is malformed.
            BackendUnavailable: the backend could not build the conversation.
        """
        cid = (
            self.validate_conversation_id(conversation_id)
            if conversation_id
            else self.new_conversation_id()
        )
        created = cid not in self.registry
        await self.registry.get_or_create(cid)
        if created and self.metrics:
            self.metrics.record_conversation()
        return cid

    # ===== Turns =====

    def start_turn(
        self,
        conversation_id: str,
        utterance: str,
        sink: OutputSink,
        timeout: Optional[float] = None,
    ) -> "asyncio.Task[TurnOutcome]":
        """Run a turn in the background; the caller drains the sink."""
        task = asyncio.create_task(
            self.submit_turn(conversation_id, utterance, sink, timeout=timeout)
        )
        self._turn_tasks.add(task)
        task.add_done_callback(self._turn_tasks.discard)
        return task

    async def submit_turn(
        self,
        conversation_id: str,
        utterance: str,
        sink: OutputSink,
        timeout: Optional[float] = None,
    ) -> TurnOutcome:
        """
        Run one turn and stream its frames to `sink`.

        The sink receives zero or more delta frames followed by exactly one
        `done` or `error` frame, unless the client closed it first. The sink is
        closed when this returns, including when the turn is cancelled.
        """
        with logger.contextualize(conversation_id=conversation_id):
            try:
                return await self._run_turn(conversation_id, utterance, sink, timeout)
            except asyncio.CancelledError:
                # Shutdown can land during creation or streaming; the reader must still see EOF.
                sink.close()
                raise

    async def _run_turn(
        self,
        conversation_id: str,
        utterance: str,
        sink: OutputSink,
        timeout: Optional[float],
    ) -> TurnOutcome:
        turn_id = uuid.uuid4().hex
        started = time.monotonic()
        short_id = conversation_id[:8]

        try:
            created = conversation_id not in self.registry
            entry = await self.registry.get_or_create(conversation_id)
            if created and self.metrics:
                self.metrics.record_conversation()
        except BackendUnavailable as e:
            logger.warning("[{}] {}", short_id, e.message)
            return await self._finalize(
                conversation_id, turn_id, sink, started, TerminalReason.UNAVAILABLE,
                BackendUnavailable("Failed to initialise session", conversation_id),
            )

        if sink.closed:
            return await self._finalize(
                conversation_id, turn_id, sink, started, TerminalReason.DISCONNECTED, None
            )

        logger.info("[{}] User: {}", short_id, utterance)
        try:
            with self.registry.gate.hold(conversation_id):
                reason, error, deltas = await self._stream_turn(
                    entry, turn_id, utterance, sink, timeout or self.turn_timeout_s
                )
        except ConversationBusy as e:
            logger.warning("[{}] Rejected turn: conversation busy", short_id)
            return await self._finalize(
                conversation_id, turn_id, sink, started, TerminalReason.BUSY, e
            )

        # Gate is free before the terminal frame goes out.
        return await self._finalize(
            conversation_id, turn_id, sink, started, reason, error, deltas=deltas
        )

    async def _stream_turn(
        self,
        entry: ConversationEntry,
        turn_id: str,
        utterance: str,
        sink: OutputSink,
        ceiling: float,
    ) -> Tuple[TerminalReason, Optional[GatewayError], int]:
        cid = entry.conversation_id
        try:
            binding = self.multiplexer.bind(cid, sink, turn_id=turn_id)
        except SinkAlreadyBound as e:
            logger.error("ConversationService: invariant violated, {}", e.message)
            return TerminalReason.ERROR, e, 0

        submit: Optional[asyncio.Future] = None
        closed: Optional[asyncio.Future] = None
        try:
            if self.metrics:
                self.metrics.record_turn_started()
            if self.event_emitter:
                await self.event_emitter.emit(
                    EventType.TURN_STARTED,
                    {"conversation_id": cid, "turn_id": turn_id, "state": TurnState.STREAMING.value},
                )

            submit = asyncio.ensure_future(
                entry.handle.submit(utterance, timeout=ceiling, turn_id=turn_id)
            )
            closed = asyncio.ensure_future(sink.wait_closed())
            done, _ = await asyncio.wait(
                {submit, closed}, timeout=ceiling, return_when=asyncio.FIRST_COMPLETED
            )

            if submit in done:
                if submit.cancelled():
                    return (
                        TerminalReason.ERROR,
                        BackendTurnError("Backend turn was cancelled", cid),
                        binding.forwarded,
                    )
                exc = submit.exception()
                if exc is None:
                    return TerminalReason.DONE, None, binding.forwarded
                if isinstance(exc, asyncio.TimeoutError):
                    return TerminalReason.TIMEOUT, self._timeout_error(cid, ceiling), binding.forwarded
                logger.error("[{}] Backend error: {}", cid[:8], exc)
                return (
                    TerminalReason.ERROR,
                    BackendTurnError(str(exc) or exc.__class__.__name__, cid),
                    binding.forwarded,
                )
            if closed in done:
                return TerminalReason.DISCONNECTED, None, binding.forwarded
            return TerminalReason.TIMEOUT, self._timeout_error(cid, ceiling), binding.forwarded
        finally:
            self.multiplexer.unbind(cid)
            if closed is not None:
                closed.cancel()
            if submit is not None and not submit.done():
                self._abandon(submit, cid, turn_id)

    @staticmethod
    def _timeout_error(conversation_id: str, ceiling: float) -> TurnTimeout:
        return TurnTimeout(f"Turn timed out after {ceiling:g}s", conversation_id)

    def _abandon(self, submit: asyncio.Future, conversation_id: str, turn_id: str) -> None:
        """Let a backend call run to completion and discard whatever it returns."""
        self._abandoned.add(submit)

        def _discard(fut: asyncio.Future) -> None:
            self._abandoned.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.warning(
                    "[{}] Abandoned turn {} failed in backend: {}",
                    conversation_id[:8], turn_id, exc,
                )
            else:
                logger.debug("[{}] Discarded result of abandoned turn {}", conversation_id[:8], turn_id)

        submit.add_done_callback(_discard)

    async def _finalize(
        self,
        conversation_id: str,
        turn_id: str,
        sink: OutputSink,
        started: float,
        reason: TerminalReason,
        error: Optional[GatewayError],
        deltas: int = 0,
    ) -> TurnOutcome:
        message = error.message if error else None
        if reason == TerminalReason.DONE:
            sink.write(GatewayProtocol.done())
        elif reason != TerminalReason.DISCONNECTED:
            sink.write(GatewayProtocol.error(message or "Turn failed"))
        sink.close()

        duration = time.monotonic() - started
        short_id = conversation_id[:8]
        if reason == TerminalReason.DONE:
            logger.info("[{}] Response complete ({} deltas, {:.2f}s)", short_id, deltas, duration)
        elif reason == TerminalReason.DISCONNECTED:
            logger.info("[{}] Client disconnected, turn {} released", short_id, turn_id)
        else:
            logger.warning("[{}] Turn {} ended with {}: {}", short_id, turn_id, reason.value, message)

        if self.metrics:
            self.metrics.record_turn_finished(reason.value, duration)

        if self.event_emitter:
            event = {
                TerminalReason.DONE: EventType.TURN_COMPLETED,
                TerminalReason.DISCONNECTED: EventType.TURN_DISCONNECTED,
            }.get(reason, EventType.TURN_FAILED)
            await self.event_emitter.emit(
                event,
                {
                    "conversation_id": conversation_id,
                    "turn_id": turn_id,
                    "reason": reason.value,
                    "error": message,
                    "code": error.code if error else None,
                    "deltas": deltas,
                    "duration_s": round(duration, 3),
                },
            )

        return TurnOutcome(
            conversation_id=conversation_id,
            turn_id=turn_id,
            state=TurnState.CLOSED,
            reason=reason,
            error=message,
            deltas=deltas,
        )

    # ===== Diagnostics =====

    def get_processing_stats(self) -> dict:
        return {
            "conversations": len(self.registry),
            "busy_conversations": self.registry.gate.active_count,
            "bound_sinks": self.multiplexer.active_count,
            "running_turns": len(self._turn_tasks),
            "abandoned_backend_calls": len(self._abandoned),
        }

    async def shutdown(self) -> None:
        """Cancel turns still streaming; abandoned backend calls are left alone."""
        tasks = list(self._turn_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("ConversationService: Shutdown complete")
