from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, Depends, Query

from ...domain.chat_models import ChatMessage, MessageEditRecord, MessageEditRequest, ReactionRequest, ReactionResponse
from ...infrastructure.message_store import MessageStore
from ..deps import get_store

router = APIRouter(prefix="/messages", tags=["messages"])


@router.put("/{message_id}", response_model=ChatMessage)
def edit_message(message_id: str, req: MessageEditRequest, store: MessageStore = Depends(get_store)) -> ChatMessage:
    return store.edit_message(message_id, req.user_id, req.new_content, req.edit_reason)


@router.get("/{message_id}/history", response_model=List[MessageEditRecord])
def edit_history(message_id: str, store: MessageStore = Depends(get_store)) -> List[MessageEditRecord]:
    return store.list_edit_history(message_id)


@router.delete("/{message_id}")
def delete_message(
    message_id: str,
    user_id: str = Query("guest", min_length=1),
    store: MessageStore = Depends(get_store),
) -> Dict[str, object]:
    store.delete_message(message_id, user_id)
    return {"message_id": message_id, "deleted": True}


@router.post("/{message_id}/reaction", response_model=ReactionResponse)
def add_reaction(message_id: str, req: ReactionRequest, store: MessageStore = Depends(get_store)) -> ReactionResponse:
    msg = store.set_reaction(message_id, req.reaction)
    return ReactionResponse(message_id=msg.message_id, reaction=msg.reaction)


@router.delete("/{message_id}/reaction", response_model=ReactionResponse)
def remove_reaction(message_id: str, store: MessageStore = Depends(get_store)) -> ReactionResponse:
    msg = store.set_reaction(message_id, None)
    return ReactionResponse(message_id=msg.message_id, reaction=None)
