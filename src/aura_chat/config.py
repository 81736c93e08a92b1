from __future__ import annotations

"""Runtime configuration for the chat engine.

All values come from the environment (a ``.env`` file is loaded by the API
entrypoint). Defaults are suitable for local development.

Env vars:
- GEMINI_API_KEY, GEMINI_MODEL_NAME, GEMINI_BASE_URL
- GEMINI_MAX_OUTPUT_TOKENS, GEMINI_TEMPERATURE
- GEMINI_CONNECT_TIMEOUT, GEMINI_READ_TIMEOUT
- MAX_CHATS_PER_USER (default 5)
- DEFAULT_TOKEN_LIMIT (default 100000)
- CHAT_CONTEXT_WINDOW (default 10)
- CHAT_EXCHANGE_OVERHEAD_TOKENS (default 10)
- CHAT_MAX_MESSAGE_LENGTH (default 5000)
- AURA_SYSTEM_PROMPT (overrides the built-in system instruction)
"""

from dataclasses import dataclass
from typing import Optional

import os


DEFAULT_SYSTEM_PROMPT = (
    "You are the AI Assistant for the AuraMint platform, a creative hub for digital artists "
    "and collectors. Help users develop creative concepts, refine art prompts, and explain "
    "technical ideas in accessible terms. Keep responses focused, suggest next steps, and "
    "do not provide financial or investment advice."
)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class ChatConfig:
    gemini_api_key: str = ""
    model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    max_output_tokens: int = 2048
    temperature: float = 0.7
    connect_timeout: float = 3.0
    read_timeout: float = 60.0
    max_chats_per_user: int = 5
    default_token_limit: int = 100000
    context_window: int = 10
    exchange_overhead_tokens: int = 10
    max_message_length: int = 5000
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @staticmethod
    def from_env() -> "ChatConfig":
        return ChatConfig(
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            model=os.getenv("GEMINI_MODEL_NAME") or "gemini-2.0-flash",
            gemini_base_url=(os.getenv("GEMINI_BASE_URL") or "https://generativelanguage.googleapis.com/v1beta").rstrip("/"),
            max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", 2048),
            temperature=_env_float("GEMINI_TEMPERATURE", 0.7),
            connect_timeout=_env_float("GEMINI_CONNECT_TIMEOUT", 3.0),
            read_timeout=_env_float("GEMINI_READ_TIMEOUT", 60.0),
            max_chats_per_user=_env_int("MAX_CHATS_PER_USER", 5),
            default_token_limit=_env_int("DEFAULT_TOKEN_LIMIT", 100000),
            context_window=_env_int("CHAT_CONTEXT_WINDOW", 10),
            exchange_overhead_tokens=_env_int("CHAT_EXCHANGE_OVERHEAD_TOKENS", 10),
            max_message_length=_env_int("CHAT_MAX_MESSAGE_LENGTH", 5000),
            system_prompt=os.getenv("AURA_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
        )


_config: Optional[ChatConfig] = None


def get_chat_config() -> ChatConfig:
    global _config
    if _config is None:
        _config = ChatConfig.from_env()
    return _config


def reset_chat_config() -> None:
    """Forget the cached config so the next call re-reads the environment."""

    global _config
    _config = None
