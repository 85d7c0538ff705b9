"""
Gateway protocol definition.

Frames streamed to a client for one turn, the turn state machine, and the
lifecycle events published on the gateway event bus.
"""
from enum import Enum
from typing import Dict, Any, Optional, Union, Literal
from pydantic import BaseModel, Field
from datetime import datetime
import json


class FrameType(str, Enum):
    """Frame type streamed during a turn."""
    DELTA = "delta"          # Incremental assistant output
    DONE = "done"            # Terminal success
    ERROR = "error"          # Terminal failure


class TurnState(str, Enum):
    """Turn execution state."""
    IDLE = "idle"
    GATED = "gated"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CLOSED = "closed"


class TerminalReason(str, Enum):
    """Why a turn left the streaming state."""
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"
    DISCONNECTED = "disconnected"


class EventType(str, Enum):
    """Event type published on the gateway event bus."""
    CONVERSATION_CREATED = "conversation.created"
    TURN_STARTED = "turn.started"
    TURN_COMPLETED = "turn.completed"
    TURN_FAILED = "turn.failed"
    TURN_DISCONNECTED = "turn.disconnected"
    # Tool invocation lifecycle
    TOOL_CALL_START = "tool.call.start"
    TOOL_CALL_RESULT = "tool.call.result"
    TOOL_CALL_ERROR = "tool.call.error"


# ============ Frames ============

class DeltaFrame(BaseModel):
    type: Literal["delta"] = "delta"
    content: str


class DoneFrame(BaseModel):
    type: Literal["done"] = "done"


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    message: str


Frame = Union[DeltaFrame, DoneFrame, ErrorFrame]


class EventMessage(BaseModel):
    """Generic event message envelope."""
    event: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    seq: Optional[int] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class TurnOutcome(BaseModel):
    """Result of one turn, for callers and tests."""
    conversation_id: str
    turn_id: str
    state: TurnState = TurnState.CLOSED
    reason: TerminalReason
    error: Optional[str] = None
    deltas: int = 0


class GatewayProtocol:
    """Helpers for building and encoding turn frames."""

    @staticmethod
    def delta(content: str) -> DeltaFrame:
        return DeltaFrame(content=content)

    @staticmethod
    def done() -> DoneFrame:
        return DoneFrame()

    @staticmethod
    def error(message: str) -> ErrorFrame:
        return ErrorFrame(message=message)

    @staticmethod
    def is_terminal(frame: Frame) -> bool:
        return frame.type in (FrameType.DONE.value, FrameType.ERROR.value)

    @staticmethod
    def encode_sse(frame: Frame) -> str:
        """Encode a frame as one server-sent event."""
        return f"data: {json.dumps(frame.model_dump(), ensure_ascii=False)}\n\n"
