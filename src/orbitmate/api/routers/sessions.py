from __future__ import annotations

from typing import Any, Dict, List, Union

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from ...domain.chat_models import (
    ChatMessage,
    ChatSession,
    ChatSessionCreate,
    ChatSessionUpdate,
    SendMessageRequest,
)
from ...infrastructure.message_store import MessageStore, session_not_found
from ...services.event_encoder import SSE_HEADERS
from ...services.stream_coordinator import StreamCoordinator, TurnOptions, TurnStream
from ..deps import get_coordinator, get_store

router = APIRouter(prefix="/sessions", tags=["sessions"])


class TurnStreamResponse(StreamingResponse):
    """SSE response that still closes out the turn if the body never starts."""

    def __init__(self, stream: TurnStream) -> None:
        super().__init__(stream.frames(), media_type="text/event-stream", headers=SSE_HEADERS)
        self.turn_stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.turn_stream.abandon()


@router.post("", response_model=ChatSession, status_code=status.HTTP_201_CREATED)
def create_session(req: ChatSessionCreate, store: MessageStore = Depends(get_store)) -> ChatSession:
    return store.create_session(req.user_id, title=req.title, category=req.category)


@router.get("", response_model=List[ChatSession])
def list_sessions(user_id: str = Query(..., min_length=1), store: MessageStore = Depends(get_store)) -> List[ChatSession]:
    return store.list_user_sessions(user_id)


@router.get("/{session_id}", response_model=ChatSession)
def get_session(session_id: str, store: MessageStore = Depends(get_store)) -> ChatSession:
    sess = store.get_session(session_id)
    if not sess:
        raise session_not_found(session_id)
    return sess


@router.put("/{session_id}", response_model=ChatSession)
def update_session(session_id: str, req: ChatSessionUpdate, store: MessageStore = Depends(get_store)) -> ChatSession:
    return store.update_session(session_id, title=req.title, category=req.category, archived=req.archived)


@router.get("/{session_id}/messages", response_model=List[ChatMessage])
def list_messages(session_id: str, store: MessageStore = Depends(get_store)) -> List[ChatMessage]:
    if not store.get_session(session_id):
        raise session_not_found(session_id)
    return store.list_messages(session_id)


@router.post("/{session_id}/messages", response_model=None)
async def send_message(
    session_id: str,
    body: SendMessageRequest,
    request: Request,
    coordinator: StreamCoordinator = Depends(get_coordinator),
) -> Union[StreamingResponse, Dict[str, Any]]:
    result = await coordinator.handle_turn(
        session_id,
        body.user_id,
        body.message,
        TurnOptions.from_request(body),
        is_disconnected=request.is_disconnected,
    )
    if isinstance(result, TurnStream):
        return TurnStreamResponse(result)
    return result.to_payload()
