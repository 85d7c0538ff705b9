from __future__ import annotations

from fastapi import HTTPException, Request

from gateway.conversation_service import ConversationService
from gateway.protocol import TerminalReason


def get_conversation_service(request: Request) -> ConversationService:
    service = getattr(request.app.state, "conversation_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Conversation service not initialized")
    return service


def http_status_from_reason(reason: TerminalReason) -> int:
    return {
        TerminalReason.DONE: 200,
        TerminalReason.BUSY: 409,
        TerminalReason.UNAVAILABLE: 503,
        TerminalReason.TIMEOUT: 504,
        TerminalReason.DISCONNECTED: 499,
    }.get(reason, 502)
