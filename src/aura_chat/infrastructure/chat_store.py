from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol, Tuple
import logging
import os
import uuid

from ..domain.chat_models import DEFAULT_CHAT_TITLE, Chat, ChatMessage
from ..domain.errors import Forbidden, NotFound, QuotaExceeded


logger = logging.getLogger(__name__)


class ChatStore(Protocol):
    def create_chat(self, user_id: str, title: Optional[str] = None) -> Chat: ...

    def list_active_chats(self, user_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Chat], int]: ...

    def count_active_chats(self, user_id: str) -> int: ...

    def get_owned_chat(self, chat_id: str, user_id: str) -> Chat: ...

    def rename_chat(self, chat_id: str, user_id: str, title: str) -> Chat: ...

    def deactivate_chat(self, chat_id: str, user_id: str) -> Chat: ...

    def append_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        tokens: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage: ...

    def set_message_tokens(self, message_id: str, tokens: int) -> ChatMessage: ...

    def list_messages(self, chat_id: str, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[ChatMessage], int]: ...

    def recent_messages(self, chat_id: str, user_id: str, limit: int = 10) -> List[ChatMessage]: ...


def now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass
class _Chat:
    chat_id: str
    user_id: str
    title: str
    is_active: bool
    created_at: str
    updated_at: str


@dataclass
class _Message:
    message_id: str
    chat_id: str
    role: str
    content: str
    created_at: str
    tokens_consumed: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


class InMemoryChatStore:
    def __init__(self, max_active_chats: int = 5) -> None:
        self.max_active_chats = max_active_chats
        self._chats: Dict[str, _Chat] = {}
        self._by_user: Dict[str, List[str]] = {}
        self._messages: Dict[str, List[_Message]] = {}
        self._message_index: Dict[str, _Message] = {}
        self._lock = RLock()

    def _chat_model(self, chat: _Chat) -> Chat:
        return Chat(**chat.__dict__)

    def _message_model(self, message: _Message) -> ChatMessage:
        data = dict(message.__dict__)
        data["metadata"] = dict(message.metadata)
        return ChatMessage(**data)

    def _require_owned(self, chat_id: str, user_id: str, *, allow_inactive: bool = False) -> _Chat:
        chat = self._chats.get(chat_id)
        if chat is None:
            logger.warning("chat_not_found", extra={"chat_id": chat_id, "user_id": user_id})
            raise NotFound()
        if chat.user_id != user_id:
            logger.warning("chat_access_denied", extra={"chat_id": chat_id, "user_id": user_id})
            raise Forbidden()
        if not chat.is_active and not allow_inactive:
            logger.warning("chat_inactive", extra={"chat_id": chat_id, "user_id": user_id})
            raise NotFound()
        return chat

    def _active_ids(self, user_id: str) -> List[str]:
        return [cid for cid in self._by_user.get(user_id, []) if self._chats[cid].is_active]

    def create_chat(self, user_id: str, title: Optional[str] = None) -> Chat:
        with self._lock:
            active = len(self._active_ids(user_id))
            if active >= self.max_active_chats:
                logger.warning("max_chats_exceeded", extra={"user_id": user_id, "active": active})
                raise QuotaExceeded(
                    QuotaExceeded.CHATS,
                    f"Maximum {self.max_active_chats} chats allowed. Please delete an old chat to create a new one.",
                )
            now = now_iso()
            chat = _Chat(
                chat_id=str(uuid.uuid4()),
                user_id=user_id,
                title=title or DEFAULT_CHAT_TITLE,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            self._chats[chat.chat_id] = chat
            self._by_user.setdefault(user_id, []).append(chat.chat_id)
            self._messages[chat.chat_id] = []
            logger.info("chat_created", extra={"user_id": user_id, "chat_id": chat.chat_id})
            return self._chat_model(chat)

    def list_active_chats(self, user_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Chat], int]:
        with self._lock:
            active = [self._chats[cid] for cid in self._active_ids(user_id)]
            # Newest first; insertion order breaks timestamp ties
            ordered = list(reversed(active))
            ordered.sort(key=lambda c: c.created_at, reverse=True)
            page = ordered[max(0, offset): max(0, offset) + max(0, limit)]
            return [self._chat_model(c) for c in page], len(active)

    def count_active_chats(self, user_id: str) -> int:
        with self._lock:
            return len(self._active_ids(user_id))

    def get_owned_chat(self, chat_id: str, user_id: str) -> Chat:
        with self._lock:
            return self._chat_model(self._require_owned(chat_id, user_id))

    def rename_chat(self, chat_id: str, user_id: str, title: str) -> Chat:
        with self._lock:
            chat = self._require_owned(chat_id, user_id)
            chat.title = title
            chat.updated_at = now_iso()
            return self._chat_model(chat)

    def deactivate_chat(self, chat_id: str, user_id: str) -> Chat:
        with self._lock:
            chat = self._require_owned(chat_id, user_id, allow_inactive=True)
            if chat.is_active:
                chat.is_active = False
                chat.updated_at = now_iso()
                logger.info("chat_deactivated", extra={"user_id": user_id, "chat_id": chat_id})
            return self._chat_model(chat)

    def append_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        tokens: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None or not chat.is_active:
                raise NotFound()
            history = self._messages.setdefault(chat_id, [])
            now = now_iso()
            # Creation times never go backwards within a chat
            if history and history[-1].created_at > now:
                now = history[-1].created_at
            msg = _Message(
                message_id=str(uuid.uuid4()),
                chat_id=chat_id,
                role=role,
                content=content,
                created_at=now,
                tokens_consumed=max(0, int(tokens)),
                metadata=dict(metadata) if metadata else {},
            )
            history.append(msg)
            self._message_index[msg.message_id] = msg
            chat.updated_at = now
            return self._message_model(msg)

    def set_message_tokens(self, message_id: str, tokens: int) -> ChatMessage:
        with self._lock:
            msg = self._message_index.get(message_id)
            if msg is None:
                raise KeyError("Message not found")
            msg.tokens_consumed = max(0, int(tokens))
            return self._message_model(msg)

    def list_messages(self, chat_id: str, user_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[ChatMessage], int]:
        with self._lock:
            self._require_owned(chat_id, user_id)
            history = self._messages.get(chat_id, [])
            start = max(0, offset)
            page = history[start: start + max(0, limit)]
            return [self._message_model(m) for m in page], len(history)

    def recent_messages(self, chat_id: str, user_id: str, limit: int = 10) -> List[ChatMessage]:
        with self._lock:
            self._require_owned(chat_id, user_id)
            if limit <= 0:
                return []
            history = self._messages.get(chat_id, [])
            return [self._message_model(m) for m in history[-limit:]]


_store: ChatStore | None = None


def _store_impl() -> str:
    return (os.getenv("AURA_STORE_IMPL") or "memory").strip().lower()


def get_chat_store() -> ChatStore:
    global _store
    if _store is not None:
        return _store
    from ..config import get_chat_config

    max_chats = get_chat_config().max_chats_per_user
    if _store_impl() == "mongo":
        from .chat_store_mongo import MongoChatStore

        _store = MongoChatStore(max_active_chats=max_chats)
        return _store
    _store = InMemoryChatStore(max_active_chats=max_chats)
    return _store


def reset_chat_store() -> None:
    global _store
    _store = None
