"""Read API over the live conversation store."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ccpulse.models import Conversation, ConversationOverview, ConversationState
from ccpulse.monitor import ConversationMonitor

conversations_router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def _get_monitor(request: Request) -> ConversationMonitor:
    monitor = getattr(request.app.state, "monitor", None)
    if not monitor:
        raise HTTPException(status_code=503, detail="Conversation monitor not initialized")
    return monitor


@conversations_router.get("", response_model=list[ConversationOverview])
async def list_conversations(
    request: Request,
    state: Optional[ConversationState] = Query(None),
    project: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
):
    """List tracked conversations, most recently modified first."""
    monitor = _get_monitor(request)
    items = monitor.list_conversations()
    if state is not None:
        items = [item for item in items if item.currentState == state]
    if project:
        items = [item for item in items if item.projectPath == project]
    return [ConversationOverview.from_conversation(item) for item in items[:limit]]


@conversations_router.get("/states")
async def get_conversation_states(request: Request):
    """Map of conversation ID to current activity state."""
    monitor = _get_monitor(request)
    states = monitor.get_all_states()
    return {conversation_id: state.value for conversation_id, state in states.items()}


@conversations_router.get("/{conversation_id}", response_model=Conversation)
async def get_conversation(request: Request, conversation_id: str):
    monitor = _get_monitor(request)
    conversation = monitor.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return conversation
