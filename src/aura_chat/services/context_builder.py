from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..config import get_chat_config
from ..infrastructure.chat_store import ChatStore


# Stored system turns are dropped; the instruction travels separately
_ROLE_MAP = {"user": "user", "assistant": "model"}


def to_turn(role: str, text: str) -> Dict[str, Any]:
    return {"role": role, "parts": [{"text": text}]}


def build_context(
    store: ChatStore,
    chat_id: str,
    user_id: str,
    new_user_text: str,
    window: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Recent history of the chat in provider shape, oldest first, with the new user turn last."""
    size = window if window is not None else get_chat_config().context_window
    turns: List[Dict[str, Any]] = []
    for msg in store.recent_messages(chat_id, user_id, limit=size):
        role = _ROLE_MAP.get(msg.role)
        if role is None:
            continue
        turns.append(to_turn(role, msg.content))
    turns.append(to_turn("user", new_user_text))
    return turns
