"""Gateway exception types.

All of these are recovered at the turn boundary and turned into protocol
frames or HTTP errors; none should escape to the event loop.
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base exception for the gateway."""

    code = "gateway_error"

    def __init__(self, message: str, conversation_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.conversation_id = conversation_id


class BackendUnavailable(GatewayError):
    """Backend conversation could not be constructed."""

    code = "backend_unavailable"


class ConversationBusy(GatewayError):
    """A turn is already in flight for this conversation."""

    code = "conversation_busy"


class SinkAlreadyBound(GatewayError):
    """An output sink is already bound; indicates a gating bug."""

    code = "sink_already_bound"


class TurnTimeout(GatewayError):
    """The turn exceeded the configured duration ceiling."""

    code = "turn_timeout"


class BackendTurnError(GatewayError):
    """The backend reported a failure mid-turn."""

    code = "backend_turn_error"
