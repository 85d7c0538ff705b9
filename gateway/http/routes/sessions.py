from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from gateway.conversation_service import ConversationService
from gateway.errors import BackendUnavailable

from ..dispatcher import get_conversation_service
from ..schemas import OpenSessionRequest, SessionListResponse


router = APIRouter()


@router.post("/sessions")
async def open_session(
    body: Optional[OpenSessionRequest] = None,
    service: ConversationService = Depends(get_conversation_service),
):
    try:
        session_id = await service.open_conversation(body.session_id if body else None)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendUnavailable as e:
        logger.error("Session creation error: {}", e)
        raise HTTPException(status_code=503, detail=f"Failed to create session: {e.message}")
    return {"status": "success", "sessionId": session_id, "conversation_id": session_id}


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(service: ConversationService = Depends(get_conversation_service)):
    sessions = service.registry.describe()
    return {"sessions": sessions, "total": len(sessions)}
