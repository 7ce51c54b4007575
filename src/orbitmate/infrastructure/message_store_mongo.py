from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
import uuid

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from ..domain.chat_models import ChatMessage, ChatSession, MessageEditRecord
from ..errors import PermissionDeniedError, PersistenceError
from .message_store import check_editable, message_not_found, now_iso, session_not_found

LOG = logging.getLogger("orbitmate.store")

_SESSION_FIELDS = ("session_id", "user_id", "title", "category", "archived", "created_at", "updated_at")
_MESSAGE_FIELDS = (
    "message_id",
    "session_id",
    "user_id",
    "role",
    "content",
    "reaction",
    "created_at",
    "edited_at",
    "is_edited",
    "metadata",
)
_EDIT_FIELDS = ("message_id", "old_content", "new_content", "edit_reason", "edited_by", "edited_at")


class MongoMessageStore:
    """Message store backed by MongoDB.

    Messages carry a monotonically increasing ``seq`` drawn from a counters
    collection so that ordering within a session does not depend on clock
    resolution.
    """

    def __init__(self, url: str = "mongodb://localhost:27017", db_name: str = "orbitmate", client: Any = None) -> None:
        try:
            self._client = client if client is not None else MongoClient(url, serverSelectionTimeoutMS=500)
            db = self._client[db_name]
            self._sessions = db["chat_sessions"]
            self._messages = db["chat_messages"]
            self._edits = db["message_edits"]
            self._counters = db["counters"]
            self._sessions.create_index("session_id", unique=True)
            self._sessions.create_index([("user_id", ASCENDING), ("updated_at", DESCENDING)])
            self._messages.create_index("message_id", unique=True)
            self._messages.create_index([("session_id", ASCENDING), ("seq", ASCENDING)])
            self._edits.create_index("message_id")
        except PyMongoError as exc:
            LOG.error("mongo_store_init_failed", extra={"err": str(exc)})
            raise PersistenceError(f"Mongo initialisation failed: {exc}") from exc

    @staticmethod
    def _to_session(doc: Dict[str, Any]) -> ChatSession:
        return ChatSession(**{k: doc.get(k) for k in _SESSION_FIELDS if doc.get(k) is not None})

    @staticmethod
    def _to_message(doc: Dict[str, Any]) -> ChatMessage:
        return ChatMessage(**{k: doc.get(k) for k in _MESSAGE_FIELDS if doc.get(k) is not None})

    def _next_seq(self) -> int:
        doc = self._counters.find_one_and_update(
            {"_id": "chat_messages"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seq"])

    def _wrap(self, op: str, exc: PyMongoError) -> PersistenceError:
        LOG.error("mongo_store_op_failed", extra={"op": op, "err": str(exc)})
        return PersistenceError(f"Mongo {op} failed: {exc}")

    def create_session(self, user_id: str, title: Optional[str] = None, category: Optional[str] = None) -> ChatSession:
        now = now_iso()
        doc = {
            "session_id": uuid.uuid4().hex,
            "user_id": user_id,
            "title": title or "New Chat",
            "category": category,
            "archived": False,
            "created_at": now,
            "updated_at": now,
        }
        try:
            self._sessions.insert_one(dict(doc))
        except PyMongoError as exc:
            raise self._wrap("create_session", exc) from exc
        return self._to_session(doc)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        try:
            doc = self._sessions.find_one({"session_id": session_id})
        except PyMongoError as exc:
            raise self._wrap("get_session", exc) from exc
        return self._to_session(doc) if doc else None

    def list_user_sessions(self, user_id: str) -> List[ChatSession]:
        try:
            docs = list(self._sessions.find({"user_id": user_id}).sort("updated_at", DESCENDING))
        except PyMongoError as exc:
            raise self._wrap("list_user_sessions", exc) from exc
        return [self._to_session(doc) for doc in docs]

    def update_session(
        self,
        session_id: str,
        *,
        title: Optional[str] = None,
        category: Optional[str] = None,
        archived: Optional[bool] = None,
    ) -> ChatSession:
        changes: Dict[str, Any] = {"updated_at": now_iso()}
        if title is not None:
            changes["title"] = title
        if category is not None:
            changes["category"] = category
        if archived is not None:
            changes["archived"] = archived
        try:
            doc = self._sessions.find_one_and_update(
                {"session_id": session_id},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise self._wrap("update_session", exc) from exc
        if not doc:
            raise session_not_found(session_id)
        return self._to_session(doc)

    def count_sessions(self) -> int:
        try:
            return int(self._sessions.count_documents({}))
        except PyMongoError as exc:
            raise self._wrap("count_sessions", exc) from exc

    def add_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        if self.get_session(session_id) is None:
            raise session_not_found(session_id)
        now = now_iso()
        try:
            doc = {
                "message_id": uuid.uuid4().hex,
                "session_id": session_id,
                "user_id": user_id,
                "role": role,
                "content": content,
                "reaction": None,
                "created_at": now,
                "edited_at": None,
                "is_edited": False,
                "metadata": dict(metadata) if metadata else None,
                "seq": self._next_seq(),
            }
            self._messages.insert_one(dict(doc))
            self._sessions.update_one({"session_id": session_id}, {"$set": {"updated_at": now}})
        except PyMongoError as exc:
            raise self._wrap("add_message", exc) from exc
        return self._to_message(doc)

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        try:
            doc = self._messages.find_one({"message_id": message_id})
        except PyMongoError as exc:
            raise self._wrap("get_message", exc) from exc
        return self._to_message(doc) if doc else None

    def list_messages(self, session_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        if limit is not None and limit <= 0:
            return []
        try:
            cursor = self._messages.find({"session_id": session_id}).sort("seq", ASCENDING)
            docs = list(cursor)
        except PyMongoError as exc:
            raise self._wrap("list_messages", exc) from exc
        if limit is not None:
            docs = docs[-limit:]
        return [self._to_message(doc) for doc in docs]

    def edit_message(self, message_id: str, user_id: str, new_content: str, edit_reason: Optional[str] = None) -> ChatMessage:
        current = self.get_message(message_id)
        if current is None:
            raise message_not_found(message_id)
        check_editable(current, user_id)
        now = now_iso()
        try:
            self._edits.insert_one(
                {
                    "message_id": message_id,
                    "old_content": current.content,
                    "new_content": new_content,
                    "edit_reason": edit_reason,
                    "edited_by": user_id,
                    "edited_at": now,
                }
            )
            doc = self._messages.find_one_and_update(
                {"message_id": message_id},
                {"$set": {"content": new_content, "is_edited": True, "edited_at": now}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise self._wrap("edit_message", exc) from exc
        if not doc:
            raise message_not_found(message_id)
        return self._to_message(doc)

    def list_edit_history(self, message_id: str) -> List[MessageEditRecord]:
        if self.get_message(message_id) is None:
            raise message_not_found(message_id)
        try:
            docs = list(self._edits.find({"message_id": message_id}).sort("edited_at", ASCENDING))
        except PyMongoError as exc:
            raise self._wrap("list_edit_history", exc) from exc
        return [MessageEditRecord(**{k: doc.get(k) for k in _EDIT_FIELDS}) for doc in docs]

    def delete_message(self, message_id: str, user_id: str) -> None:
        current = self.get_message(message_id)
        if current is None:
            raise message_not_found(message_id)
        if current.user_id != user_id:
            raise PermissionDeniedError("Only the author can delete this message")
        try:
            self._messages.delete_one({"message_id": message_id})
            self._edits.delete_many({"message_id": message_id})
        except PyMongoError as exc:
            raise self._wrap("delete_message", exc) from exc

    def set_reaction(self, message_id: str, reaction: Optional[str]) -> ChatMessage:
        try:
            doc = self._messages.find_one_and_update(
                {"message_id": message_id},
                {"$set": {"reaction": reaction}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise self._wrap("set_reaction", exc) from exc
        if not doc:
            raise message_not_found(message_id)
        return self._to_message(doc)
