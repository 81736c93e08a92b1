from __future__ import annotations

"""Per-user token usage ledger.

Quota is checked once before an exchange and committed once after it. Two
concurrent exchanges for the same user can therefore both pass the gate and
push usage past the limit by up to one exchange each; commits themselves are
atomic so no usage is ever lost, and the next request after the overshoot is
refused.
"""

from dataclasses import dataclass
from threading import RLock
from typing import Dict, Optional, Protocol
import logging
import os

from ..domain.chat_models import UserUsage
from .chat_store import now_iso


logger = logging.getLogger(__name__)


class UsageLedger(Protocol):
    def get_usage(self, user_id: str) -> UserUsage: ...

    def has_quota(self, user_id: str) -> bool: ...

    def commit_usage(self, user_id: str, tokens: int) -> Optional[UserUsage]: ...


@dataclass
class _Usage:
    user_id: str
    total_tokens_used: int
    token_limit: int
    last_reset_at: str
    created_at: str
    updated_at: str


class InMemoryUsageLedger:
    def __init__(self, default_token_limit: int = 100000) -> None:
        self.default_token_limit = default_token_limit
        self._rows: Dict[str, _Usage] = {}
        self._lock = RLock()

    def _row(self, user_id: str) -> _Usage:
        row = self._rows.get(user_id)
        if row is None:
            now = now_iso()
            row = _Usage(
                user_id=user_id,
                total_tokens_used=0,
                token_limit=self.default_token_limit,
                last_reset_at=now,
                created_at=now,
                updated_at=now,
            )
            self._rows[user_id] = row
            logger.debug("user_usage_initialized", extra={"user_id": user_id, "token_limit": row.token_limit})
        return row

    def get_usage(self, user_id: str) -> UserUsage:
        with self._lock:
            return UserUsage(**self._row(user_id).__dict__)

    def has_quota(self, user_id: str) -> bool:
        with self._lock:
            row = self._row(user_id)
            return row.total_tokens_used < row.token_limit

    def commit_usage(self, user_id: str, tokens: int) -> Optional[UserUsage]:
        if not tokens or tokens <= 0:
            return None
        with self._lock:
            row = self._row(user_id)
            row.total_tokens_used += int(tokens)
            row.updated_at = now_iso()
            logger.debug(
                "user_usage_updated",
                extra={"user_id": user_id, "tokens": tokens, "total": row.total_tokens_used},
            )
            return UserUsage(**row.__dict__)

    def set_limit(self, user_id: str, token_limit: int) -> UserUsage:
        with self._lock:
            row = self._row(user_id)
            row.token_limit = int(token_limit)
            row.updated_at = now_iso()
            return UserUsage(**row.__dict__)


_ledger: UsageLedger | None = None


def get_usage_ledger() -> UsageLedger:
    global _ledger
    if _ledger is not None:
        return _ledger
    from ..config import get_chat_config

    default_limit = get_chat_config().default_token_limit
    if (os.getenv("AURA_STORE_IMPL") or "memory").strip().lower() == "mongo":
        from .usage_ledger_mongo import MongoUsageLedger

        _ledger = MongoUsageLedger(default_token_limit=default_limit)
        return _ledger
    _ledger = InMemoryUsageLedger(default_token_limit=default_limit)
    return _ledger


def reset_usage_ledger() -> None:
    global _ledger
    _ledger = None
