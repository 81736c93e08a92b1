from __future__ import annotations

"""Typed failures raised by the chat engine.

Every failure the engine can surface to a caller is a ``ChatError`` carrying a
stable machine-readable ``code`` and the HTTP status the API layer answers
with. The same objects are rendered as terminal ``error`` events once a
response stream has started.
"""

from typing import Any, Dict, Optional


class ChatError(Exception):
    code = "INTERNAL_SERVER_ERROR"
    status_code = 500
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class Unauthorized(ChatError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Unauthorized. Please sign in."


class InvalidRequest(ChatError):
    code = "INVALID_MESSAGE"
    status_code = 400
    default_message = "Invalid request"


class NotFound(ChatError):
    code = "CHAT_NOT_FOUND"
    status_code = 404
    default_message = "Chat not found"


class Forbidden(ChatError):
    code = "UNAUTHORIZED_CHAT_ACCESS"
    status_code = 403
    default_message = "You do not have permission to access this chat"


class QuotaExceeded(ChatError):
    """Raised when either per-user quota is exhausted.

    ``kind`` is ``"chats"`` for the active-chat cap and ``"tokens"`` for the
    usage ledger.
    """

    status_code = 403
    CHATS = "chats"
    TOKENS = "tokens"

    _codes = {CHATS: "MAX_CHATS_EXCEEDED", TOKENS: "TOKEN_LIMIT_EXCEEDED"}
    _messages = {
        CHATS: "Maximum active chats reached. Please delete an old chat to create a new one.",
        TOKENS: "You have exceeded your token limit. Please wait for your limit to reset.",
    }

    def __init__(self, kind: str, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None) -> None:
        if kind not in self._codes:
            raise ValueError(f"Unknown quota kind: {kind}")
        self.kind = kind
        super().__init__(message or self._messages[kind], details=details)

    @property
    def code(self) -> str:  # type: ignore[override]
        return self._codes[self.kind]


class GenerationFailed(ChatError):
    code = "STREAM_ERROR"
    status_code = 502
    default_message = "Failed to generate response. Please try again."


class InternalError(ChatError):
    code = "INTERNAL_SERVER_ERROR"
    status_code = 500
    default_message = "An unexpected error occurred"


class RateLimited(ChatError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None) -> None:
        super().__init__(message, details={"retry_after": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds
