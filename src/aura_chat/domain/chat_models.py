from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


Role = Literal["system", "user", "assistant"]

TITLE_MAX_LENGTH = 255
DEFAULT_CHAT_TITLE = "New Chat"


class Chat(BaseModel):
    chat_id: str
    user_id: str
    title: str
    is_active: bool = True
    created_at: str
    updated_at: str


class ChatMessage(BaseModel):
    message_id: str
    chat_id: str
    role: Role
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tokens_consumed: int = 0
    created_at: str


class UserUsage(BaseModel):
    user_id: str
    total_tokens_used: int = 0
    token_limit: int
    last_reset_at: str
    created_at: str
    updated_at: str

    @property
    def remaining(self) -> int:
        return max(0, self.token_limit - self.total_tokens_used)


def _clean_title(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed or len(trimmed) > TITLE_MAX_LENGTH:
        raise ValueError(f"Title must be between 1 and {TITLE_MAX_LENGTH} characters")
    return trimmed


class ChatCreate(BaseModel):
    title: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _validate_title(cls, value: Optional[str]) -> Optional[str]:
        return _clean_title(value)


class ChatRename(BaseModel):
    title: str

    @field_validator("title")
    @classmethod
    def _validate_title(cls, value: str) -> str:
        return _clean_title(value)  # type: ignore[return-value]


class MessageCreate(BaseModel):
    message: str


class ChatCreated(BaseModel):
    chat_id: str
    title: str
    created_at: str


class ChatList(BaseModel):
    chats: List[Chat]
    total: int
    active: int


class ChatHistory(BaseModel):
    chat_id: str
    title: str
    messages: List[ChatMessage]
    total_messages: int


class ChatRenamed(BaseModel):
    chat_id: str
    title: str
    updated_at: str


class ChatDeleted(BaseModel):
    chat_id: str
    deleted_at: str


class UsageSummary(BaseModel):
    user_id: str
    total_tokens_used: int
    token_limit: int
    remaining: int
    last_reset_at: str


# Stream events emitted by the orchestrator. They are plain dataclasses rather
# than pydantic models because one is produced per provider fragment.


@dataclass(frozen=True)
class FragmentEvent:
    text: str


@dataclass(frozen=True)
class DoneEvent:
    tokens_used: int
    message_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"done": True, "tokens_used": self.tokens_used, "message_id": self.message_id}


@dataclass(frozen=True)
class ErrorEvent:
    code: str
    message: str

    def to_payload(self) -> Dict[str, Any]:
        return {"error": True, "code": self.code, "message": self.message}


StreamEvent = Union[FragmentEvent, DoneEvent, ErrorEvent]
