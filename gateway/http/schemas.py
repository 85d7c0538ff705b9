from __future__ import annotations

from pydantic import AliasChoices, BaseModel, Field
from typing import Optional, List


class OpenSessionRequest(BaseModel):
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )


class ChatRequest(BaseModel):
    message: Optional[str] = None
    stream: bool = True
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )


class ChatResponse(BaseModel):
    response: str
    session_id: str
    status: str = "success"


class SessionInfo(BaseModel):
    conversation_id: str
    created_at: str
    busy: bool


class SessionListResponse(BaseModel):
    sessions: List[SessionInfo]
    total: int
