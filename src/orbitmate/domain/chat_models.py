from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["user", "ai"]
SpecialMode = Literal["stream", "canvas"]


class ChatSessionCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    title: Optional[str] = None
    category: Optional[str] = None


class ChatSessionUpdate(BaseModel):
    title: Optional[str] = None
    category: Optional[str] = None
    archived: Optional[bool] = None


class ChatSession(BaseModel):
    session_id: str
    user_id: str
    title: str
    category: Optional[str] = None
    archived: bool = False
    created_at: str
    updated_at: str


class ChatMessage(BaseModel):
    message_id: str
    session_id: str
    user_id: str
    role: Role
    content: str
    reaction: Optional[str] = None
    created_at: str
    edited_at: Optional[str] = None
    is_edited: bool = False
    metadata: Optional[dict] = None


class SendMessageRequest(BaseModel):
    # Length and blank checks happen in the coordinator so both transports share them.
    message: str
    user_id: str = "guest"
    ai_provider_override: Optional[str] = None
    model_id_override: Optional[str] = None
    specialModeType: Optional[SpecialMode] = None
    systemPrompt: Optional[str] = None
    max_output_tokens_override: Optional[int] = Field(default=None, ge=1)
    context_message_limit: Optional[int] = Field(default=None, ge=0)


class MessageEditRequest(BaseModel):
    new_content: str = Field(min_length=1)
    user_id: str = "guest"
    edit_reason: Optional[str] = None


class MessageEditRecord(BaseModel):
    message_id: str
    old_content: str
    new_content: str
    edit_reason: Optional[str] = None
    edited_by: str
    edited_at: str


class ReactionRequest(BaseModel):
    reaction: str = Field(min_length=1, max_length=10)


class ReactionResponse(BaseModel):
    message_id: str
    reaction: Optional[str] = None


class ProviderOption(BaseModel):
    provider: str
    model: str
    label: str
    streaming: bool
    tools: bool
    available: bool
    default: bool = False


class ProviderCatalog(BaseModel):
    default_provider: str
    providers: List[ProviderOption]


class BroadcastRequest(BaseModel):
    event: str = Field(min_length=1, max_length=64)
    data: dict = Field(default_factory=dict)


class BroadcastResult(BaseModel):
    target: str
    event: str
    delivered: int
