from __future__ import annotations

from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
import logging
import os
import uuid

from ..domain.chat_models import DEFAULT_CHAT_TITLE, Chat, ChatMessage
from ..domain.errors import ChatError, Forbidden, InternalError, NotFound, QuotaExceeded
from .chat_store import InMemoryChatStore, now_iso


logger = logging.getLogger(__name__)


def mongo_required() -> bool:
    return os.getenv("AURA_REQUIRE_MONGO", "false").lower() in ("1", "true", "yes")


class MongoChatStore:
    """Mongo-backed conversation store.

    Chats live in ``chats`` and messages in ``messages``. Each chat document
    carries a ``message_seq`` counter that is incremented atomically for every
    appended message; reads sort on it so conversational order never depends
    on clock resolution.

    If Mongo is unreachable at startup and AURA_REQUIRE_MONGO is not true, the
    store runs on an in-memory fallback. Once connected, storage failures
    surface as ``InternalError``.
    """

    def __init__(self, max_active_chats: int = 5) -> None:
        self.max_active_chats = max_active_chats
        self._fallback = InMemoryChatStore(max_active_chats=max_active_chats)
        self._create_lock = Lock()
        self._client = None
        self._chats = None
        self._messages = None
        try:
            from pymongo import MongoClient  # type: ignore

            mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
            mongo_db = os.getenv("MONGO_DB", "aura")
            self._client = MongoClient(mongo_url, serverSelectionTimeoutMS=500)
            # Trigger server selection
            self._client.server_info()
            db = self._client[mongo_db]
            self._chats = db["chats"]
            self._messages = db["messages"]
            self._chats.create_index("chat_id", unique=True)
            self._chats.create_index([("user_id", 1), ("is_active", 1)])
            self._messages.create_index("message_id", unique=True)
            self._messages.create_index([("chat_id", 1), ("seq", 1)])
        except Exception as exc:
            if mongo_required():
                raise RuntimeError("Mongo chat store required but not available") from exc
            logger.warning("mongo_chat_store_unavailable_using_memory", extra={"err": str(exc)})
            self._client = None
            self._chats = None
            self._messages = None

    def _use_fallback(self) -> bool:
        return self._chats is None or self._messages is None

    def _guard(self, op: str, exc: Exception) -> ChatError:
        logger.error("mongo_chat_store_failed", extra={"op": op, "err": str(exc)})
        return InternalError(f"Failed to {op}")

    def _to_chat(self, doc: Dict[str, Any]) -> Chat:
        return Chat(
            chat_id=str(doc.get("chat_id")),
            user_id=str(doc.get("user_id")),
            title=str(doc.get("title") or DEFAULT_CHAT_TITLE),
            is_active=bool(doc.get("is_active", True)),
            created_at=str(doc.get("created_at") or now_iso()),
            updated_at=str(doc.get("updated_at") or now_iso()),
        )

    def _to_message(self, doc: Dict[str, Any]) -> ChatMessage:
        return ChatMessage(
            message_id=str(doc.get("message_id")),
            chat_id=str(doc.get("chat_id")),
            role=str(doc.get("role", "assistant")),
            content=str(doc.get("content", "")),
            metadata=dict(doc.get("metadata") or {}),
            tokens_consumed=int(doc.get("tokens_consumed") or 0),
            created_at=str(doc.get("created_at") or now_iso()),
        )

    def _owned_doc(self, chat_id: str, user_id: str, *, allow_inactive: bool = False) -> Dict[str, Any]:
        doc = self._chats.find_one({"chat_id": chat_id})  # type: ignore[union-attr]
        if not doc:
            raise NotFound()
        if doc.get("user_id") != user_id:
            logger.warning("chat_access_denied", extra={"chat_id": chat_id, "user_id": user_id})
            raise Forbidden()
        if not doc.get("is_active", True) and not allow_inactive:
            raise NotFound()
        return doc

    def count_active_chats(self, user_id: str) -> int:
        if self._use_fallback():
            return self._fallback.count_active_chats(user_id)
        try:
            return int(self._chats.count_documents({"user_id": user_id, "is_active": True}))  # type: ignore[union-attr]
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("count chats", exc) from exc

    def create_chat(self, user_id: str, title: Optional[str] = None) -> Chat:
        if self._use_fallback():
            return self._fallback.create_chat(user_id, title)
        with self._create_lock:
            active = self.count_active_chats(user_id)
            if active >= self.max_active_chats:
                logger.warning("max_chats_exceeded", extra={"user_id": user_id, "active": active})
                raise QuotaExceeded(
                    QuotaExceeded.CHATS,
                    f"Maximum {self.max_active_chats} chats allowed. Please delete an old chat to create a new one.",
                )
            now = now_iso()
            doc = {
                "chat_id": str(uuid.uuid4()),
                "user_id": user_id,
                "title": title or DEFAULT_CHAT_TITLE,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
                "message_seq": 0,
            }
            try:
                self._chats.insert_one(dict(doc))  # type: ignore[union-attr]
            except ChatError:
                raise
            except Exception as exc:
                raise self._guard("create chat", exc) from exc
            logger.info("chat_created", extra={"user_id": user_id, "chat_id": doc["chat_id"]})
            return self._to_chat(doc)

    def list_active_chats(self, user_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Chat], int]:
        if self._use_fallback():
            return self._fallback.list_active_chats(user_id, limit, offset)
        try:
            query = {"user_id": user_id, "is_active": True}
            total = int(self._chats.count_documents(query))  # type: ignore[union-attr]
            cursor = (
                self._chats.find(query)  # type: ignore[union-attr]
                .sort("created_at", -1)
                .skip(max(0, offset))
                .limit(max(0, limit))
            )
            return [self._to_chat(doc) for doc in cursor], total
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("list chats", exc) from exc

    def get_owned_chat(self, chat_id: str, user_id: str) -> Chat:
        if self._use_fallback():
            return self._fallback.get_owned_chat(chat_id, user_id)
        try:
            return self._to_chat(self._owned_doc(chat_id, user_id))
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("retrieve chat", exc) from exc

    def rename_chat(self, chat_id: str, user_id: str, title: str) -> Chat:
        if self._use_fallback():
            return self._fallback.rename_chat(chat_id, user_id, title)
        try:
            self._owned_doc(chat_id, user_id)
            updated = self._chats.find_one_and_update(  # type: ignore[union-attr]
                {"chat_id": chat_id},
                {"$set": {"title": title, "updated_at": now_iso()}},
                return_document=True,
            )
            if not updated:
                raise NotFound()
            return self._to_chat(updated)
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("update chat title", exc) from exc

    def deactivate_chat(self, chat_id: str, user_id: str) -> Chat:
        if self._use_fallback():
            return self._fallback.deactivate_chat(chat_id, user_id)
        try:
            doc = self._owned_doc(chat_id, user_id, allow_inactive=True)
            if not doc.get("is_active", True):
                return self._to_chat(doc)
            updated = self._chats.find_one_and_update(  # type: ignore[union-attr]
                {"chat_id": chat_id},
                {"$set": {"is_active": False, "updated_at": now_iso()}},
                return_document=True,
            )
            logger.info("chat_deactivated", extra={"user_id": user_id, "chat_id": chat_id})
            return self._to_chat(updated or doc)
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("delete chat", exc) from exc

    def append_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        tokens: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        if self._use_fallback():
            return self._fallback.append_message(chat_id, role, content, tokens=tokens, metadata=metadata)
        now = now_iso()
        try:
            chat = self._chats.find_one_and_update(  # type: ignore[union-attr]
                {"chat_id": chat_id, "is_active": True},
                {"$inc": {"message_seq": 1}, "$set": {"updated_at": now}},
                return_document=True,
            )
            if not chat:
                raise NotFound()
            doc = {
                "message_id": str(uuid.uuid4()),
                "chat_id": chat_id,
                "seq": int(chat.get("message_seq", 0)),
                "role": role,
                "content": content,
                "metadata": dict(metadata or {}),
                "tokens_consumed": max(0, int(tokens)),
                "created_at": now,
            }
            self._messages.insert_one(dict(doc))  # type: ignore[union-attr]
            return self._to_message(doc)
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("save message", exc) from exc

    def set_message_tokens(self, message_id: str, tokens: int) -> ChatMessage:
        if self._use_fallback():
            return self._fallback.set_message_tokens(message_id, tokens)
        try:
            updated = self._messages.find_one_and_update(  # type: ignore[union-attr]
                {"message_id": message_id},
                {"$set": {"tokens_consumed": max(0, int(tokens))}},
                return_document=True,
            )
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("update message tokens", exc) from exc
        if not updated:
            raise KeyError("Message not found")
        return self._to_message(updated)

    def list_messages(self, chat_id: str, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[ChatMessage], int]:
        if self._use_fallback():
            return self._fallback.list_messages(chat_id, user_id, limit, offset)
        try:
            self._owned_doc(chat_id, user_id)
            total = int(self._messages.count_documents({"chat_id": chat_id}))  # type: ignore[union-attr]
            cursor = (
                self._messages.find({"chat_id": chat_id})  # type: ignore[union-attr]
                .sort("seq", 1)
                .skip(max(0, offset))
                .limit(max(0, limit))
            )
            return [self._to_message(doc) for doc in cursor], total
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("retrieve messages", exc) from exc

    def recent_messages(self, chat_id: str, user_id: str, limit: int = 10) -> List[ChatMessage]:
        if self._use_fallback():
            return self._fallback.recent_messages(chat_id, user_id, limit)
        try:
            self._owned_doc(chat_id, user_id)
            if limit <= 0:
                return []
            cursor = self._messages.find({"chat_id": chat_id}).sort("seq", -1).limit(limit)  # type: ignore[union-attr]
            docs = list(cursor)
            docs.reverse()
            return [self._to_message(doc) for doc in docs]
        except ChatError:
            raise
        except Exception as exc:
            raise self._guard("retrieve messages", exc) from exc
