from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import uuid

from ..config import Settings
from ..domain.chat_models import ChatMessage, ChatSession, MessageEditRecord
from ..errors import NotFoundError, PermissionDeniedError, ValidationError


class MessageStore(Protocol):
    def create_session(self, user_id: str, title: Optional[str] = None, category: Optional[str] = None) -> ChatSession: ...

    def get_session(self, session_id: str) -> Optional[ChatSession]: ...

    def list_user_sessions(self, user_id: str) -> List[ChatSession]: ...

    def update_session(
        self,
        session_id: str,
        *,
        title: Optional[str] = None,
        category: Optional[str] = None,
        archived: Optional[bool] = None,
    ) -> ChatSession: ...

    def count_sessions(self) -> int: ...

    def add_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage: ...

    def get_message(self, message_id: str) -> Optional[ChatMessage]: ...

    def list_messages(self, session_id: str, limit: Optional[int] = None) -> List[ChatMessage]: ...

    def edit_message(self, message_id: str, user_id: str, new_content: str, edit_reason: Optional[str] = None) -> ChatMessage: ...

    def list_edit_history(self, message_id: str) -> List[MessageEditRecord]: ...

    def delete_message(self, message_id: str, user_id: str) -> None: ...

    def set_reaction(self, message_id: str, reaction: Optional[str]) -> ChatMessage: ...


def now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def session_not_found(session_id: str) -> NotFoundError:
    return NotFoundError(f"Session {session_id} not found", code="SESSION_NOT_FOUND")


def message_not_found(message_id: str) -> NotFoundError:
    return NotFoundError(f"Message {message_id} not found", code="MESSAGE_NOT_FOUND")


def check_editable(message: ChatMessage, user_id: str) -> None:
    if message.role == "ai":
        raise ValidationError("AI messages cannot be edited", code="INVALID_OPERATION")
    if message.user_id != user_id:
        raise PermissionDeniedError("Only the author can edit this message")


@dataclass
class _Session:
    session_id: str
    user_id: str
    title: str
    category: Optional[str]
    archived: bool
    created_at: str
    updated_at: str


@dataclass
class _Message:
    message_id: str
    session_id: str
    user_id: str
    role: str
    content: str
    created_at: str
    reaction: Optional[str] = None
    edited_at: Optional[str] = None
    is_edited: bool = False
    metadata: Dict[str, Any] | None = None


@dataclass
class _Edit:
    message_id: str
    old_content: str
    new_content: str
    edit_reason: Optional[str]
    edited_by: str
    edited_at: str = field(default_factory=now_iso)


class InMemoryMessageStore:
    def __init__(self) -> None:
        self._sessions: Dict[str, _Session] = {}
        self._by_user: Dict[str, List[str]] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._message_index: Dict[str, _Message] = {}
        self._edits: Dict[str, List[_Edit]] = {}
        self._lock = RLock()

    def _session_model(self, sess: _Session) -> ChatSession:
        return ChatSession(**sess.__dict__)

    def _message_model(self, message: _Message) -> ChatMessage:
        data = dict(message.__dict__)
        data["metadata"] = dict(message.metadata) if message.metadata else None
        return ChatMessage(**data)

    def create_session(self, user_id: str, title: Optional[str] = None, category: Optional[str] = None) -> ChatSession:
        with self._lock:
            sid = uuid.uuid4().hex
            now = now_iso()
            sess = _Session(
                session_id=sid,
                user_id=user_id,
                title=title or "New Chat",
                category=category,
                archived=False,
                created_at=now,
                updated_at=now,
            )
            self._sessions[sid] = sess
            self._by_user.setdefault(user_id, []).append(sid)
            self._messages[sid] = []
            return self._session_model(sess)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            sess = self._sessions.get(session_id)
            if not sess:
                return None
            return self._session_model(sess)

    def list_user_sessions(self, user_id: str) -> List[ChatSession]:
        with self._lock:
            out = [
                self._session_model(self._sessions[sid])
                for sid in self._by_user.get(user_id, [])
                if sid in self._sessions
            ]
            # Newest first
            return sorted(out, key=lambda s: s.updated_at, reverse=True)

    def update_session(
        self,
        session_id: str,
        *,
        title: Optional[str] = None,
        category: Optional[str] = None,
        archived: Optional[bool] = None,
    ) -> ChatSession:
        with self._lock:
            sess = self._sessions.get(session_id)
            if not sess:
                raise session_not_found(session_id)
            if title is not None:
                sess.title = title
            if category is not None:
                sess.category = category
            if archived is not None:
                sess.archived = archived
            sess.updated_at = now_iso()
            return self._session_model(sess)

    def count_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def add_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        with self._lock:
            if session_id not in self._sessions:
                raise session_not_found(session_id)
            now = now_iso()
            msg = _Message(
                message_id=uuid.uuid4().hex,
                session_id=session_id,
                user_id=user_id,
                role=role,
                content=content,
                created_at=now,
                metadata=dict(metadata) if metadata else None,
            )
            self._messages.setdefault(session_id, []).append(msg)
            self._message_index[msg.message_id] = msg
            # bump session updated_at
            self._sessions[session_id].updated_at = now
            return self._message_model(msg)

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        with self._lock:
            msg = self._message_index.get(message_id)
            return self._message_model(msg) if msg else None

    def list_messages(self, session_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        with self._lock:
            msgs = self._messages.get(session_id, [])
            if limit is not None:
                msgs = msgs[-limit:] if limit > 0 else []
            return [self._message_model(m) for m in msgs]

    def edit_message(self, message_id: str, user_id: str, new_content: str, edit_reason: Optional[str] = None) -> ChatMessage:
        with self._lock:
            msg = self._message_index.get(message_id)
            if not msg:
                raise message_not_found(message_id)
            check_editable(self._message_model(msg), user_id)
            self._edits.setdefault(message_id, []).append(
                _Edit(
                    message_id=message_id,
                    old_content=msg.content,
                    new_content=new_content,
                    edit_reason=edit_reason,
                    edited_by=user_id,
                )
            )
            msg.content = new_content
            msg.is_edited = True
            msg.edited_at = now_iso()
            return self._message_model(msg)

    def list_edit_history(self, message_id: str) -> List[MessageEditRecord]:
        with self._lock:
            if message_id not in self._message_index:
                raise message_not_found(message_id)
            return [MessageEditRecord(**edit.__dict__) for edit in self._edits.get(message_id, [])]

    def delete_message(self, message_id: str, user_id: str) -> None:
        with self._lock:
            msg = self._message_index.get(message_id)
            if not msg:
                raise message_not_found(message_id)
            if msg.user_id != user_id:
                raise PermissionDeniedError("Only the author can delete this message")
            self._messages[msg.session_id] = [m for m in self._messages.get(msg.session_id, []) if m.message_id != message_id]
            self._message_index.pop(message_id, None)
            self._edits.pop(message_id, None)

    def set_reaction(self, message_id: str, reaction: Optional[str]) -> ChatMessage:
        with self._lock:
            msg = self._message_index.get(message_id)
            if not msg:
                raise message_not_found(message_id)
            msg.reaction = reaction
            return self._message_model(msg)


def build_message_store(settings: Settings) -> MessageStore:
    if settings.store_impl == "mongo":
        from .message_store_mongo import MongoMessageStore

        return MongoMessageStore(url=settings.mongo_url, db_name=settings.mongo_db)
    return InMemoryMessageStore()
