from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from gateway.conversation_service import ConversationService
from gateway.protocol import GatewayProtocol, TerminalReason
from gateway.sinks import ListSink, QueueSink

from ..dispatcher import get_conversation_service, http_status_from_reason
from ..schemas import ChatRequest, ChatResponse


router = APIRouter()


@router.post("/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    service: ConversationService = Depends(get_conversation_service),
):
    user_text = (body.message or "").strip()
    if not user_text:
        raise HTTPException(status_code=400, detail="Invalid message")
    if not body.session_id:
        raise HTTPException(
            status_code=400, detail="Missing sessionId: call POST /api/sessions first"
        )
    try:
        session_id = service.validate_conversation_id(body.session_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not body.stream:
        collector = ListSink()
        outcome = await service.submit_turn(session_id, user_text, collector)
        if outcome.reason != TerminalReason.DONE:
            raise HTTPException(
                status_code=http_status_from_reason(outcome.reason),
                detail=outcome.error or "Turn failed",
            )
        return ChatResponse(response=collector.text, session_id=session_id)

    heartbeat = getattr(request.app.state, "heartbeat_interval_s", 15.0)
    sink = QueueSink()
    service.start_turn(session_id, user_text, sink)

    async def _stream():
        try:
            while True:
                try:
                    frame = await sink.next_frame(timeout=heartbeat)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keep-alive\n\n"
                    continue
                if frame is None:
                    break
                yield GatewayProtocol.encode_sse(frame)
                if GatewayProtocol.is_terminal(frame):
                    break
        finally:
            # Client gone or stream finished: either way the turn sees a closed sink.
            sink.close()

    return StreamingResponse(
        _stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
