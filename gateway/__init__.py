"""
"""
from .protocol import GatewayProtocol, FrameType, TurnState, TerminalReason, EventType
from .errors import (
    GatewayError,
    BackendUnavailable,
    ConversationBusy,
    SinkAlreadyBound,
    TurnTimeout,
    BackendTurnError,
)
from .events import EventEmitter
from .sinks import OutputSink, QueueSink, ListSink
from .session_registry import SessionRegistry, ConcurrencyGate, ConversationEntry
from .multiplexer import ResponseMultiplexer, SinkBinding
from .conversation_service import ConversationService

__all__ = [
    'GatewayProtocol',
    'FrameType',
    'TurnState',
    'TerminalReason',
    'EventType',
    'GatewayError',
    'BackendUnavailable',
    'ConversationBusy',
    'SinkAlreadyBound',
    'TurnTimeout',
    'BackendTurnError',
    'EventEmitter',
    'OutputSink',
    'QueueSink',
    'ListSink',
    'SessionRegistry',
    'ConcurrencyGate',
    'ConversationEntry',
    'ResponseMultiplexer',
    'SinkBinding',
    'ConversationService',
]
