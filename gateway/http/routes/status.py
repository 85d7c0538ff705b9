from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from gateway.conversation_service import ConversationService
from gateway.protocol import EventType

from ..dispatcher import get_conversation_service


router = APIRouter()


@router.get("/status")
async def get_status(service: ConversationService = Depends(get_conversation_service)):
    return {"status": "running", **service.get_processing_stats()}


@router.get("/tools")
async def list_tools(request: Request):
    registry = getattr(request.app.state, "tool_registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Tool registry not initialized")
    return {"status": "success", **registry.list_tools()}


@router.get("/metrics")
async def get_metrics(
    request: Request,
    service: ConversationService = Depends(get_conversation_service),
):
    return request.app.state.metrics.get_stats(multiplexer=service.multiplexer)


@router.get("/metrics/prometheus", response_class=PlainTextResponse)
async def get_metrics_prometheus(request: Request):
    return request.app.state.metrics.to_prometheus_text()


@router.get("/events")
async def get_events(
    request: Request,
    event: Optional[EventType] = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    """Recent gateway events (conversation, turn and tool lifecycle), oldest first."""
    history = request.app.state.event_emitter.get_history(event, limit=limit)
    return {
        "status": "success",
        "total": len(history),
        "events": [e.model_dump(mode="json") for e in history],
    }
