from __future__ import annotations

from typing import Any, Dict, Optional
import logging
import os

from ..domain.chat_models import UserUsage
from .chat_store import now_iso
from .chat_store_mongo import mongo_required
from .usage_ledger import InMemoryUsageLedger


logger = logging.getLogger(__name__)


class MongoUsageLedger:
    """Mongo-backed usage ledger, one ``user_usage`` document per user.

    Rows are created lazily with an upsert and usage is incremented with
    ``$inc`` so concurrent commits never overwrite each other. Write failures
    propagate to the caller.
    """

    def __init__(self, default_token_limit: int = 100000) -> None:
        self.default_token_limit = default_token_limit
        self._fallback = InMemoryUsageLedger(default_token_limit=default_token_limit)
        self._client = None
        self._usage = None
        try:
            from pymongo import MongoClient  # type: ignore

            mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
            mongo_db = os.getenv("MONGO_DB", "aura")
            self._client = MongoClient(mongo_url, serverSelectionTimeoutMS=500)
            self._client.server_info()
            self._usage = self._client[mongo_db]["user_usage"]
            self._usage.create_index("user_id", unique=True)
        except Exception as exc:
            if mongo_required():
                raise RuntimeError("Mongo usage ledger required but not available") from exc
            logger.warning("mongo_usage_ledger_unavailable_using_memory", extra={"err": str(exc)})
            self._client = None
            self._usage = None

    def _use_fallback(self) -> bool:
        return self._usage is None

    def _insert_defaults(self) -> Dict[str, Any]:
        now = now_iso()
        return {
            "token_limit": self.default_token_limit,
            "last_reset_at": now,
            "created_at": now,
        }

    def _to_usage(self, doc: Dict[str, Any]) -> UserUsage:
        now = now_iso()
        return UserUsage(
            user_id=str(doc.get("user_id")),
            total_tokens_used=int(doc.get("total_tokens_used") or 0),
            token_limit=int(doc.get("token_limit") or self.default_token_limit),
            last_reset_at=str(doc.get("last_reset_at") or now),
            created_at=str(doc.get("created_at") or now),
            updated_at=str(doc.get("updated_at") or now),
        )

    def get_usage(self, user_id: str) -> UserUsage:
        if self._use_fallback():
            return self._fallback.get_usage(user_id)
        defaults = self._insert_defaults()
        defaults["total_tokens_used"] = 0
        defaults["updated_at"] = defaults["created_at"]
        doc = self._usage.find_one_and_update(  # type: ignore[union-attr]
            {"user_id": user_id},
            {"$setOnInsert": defaults},
            upsert=True,
            return_document=True,
        )
        return self._to_usage(doc or {"user_id": user_id, **defaults})

    def has_quota(self, user_id: str) -> bool:
        usage = self.get_usage(user_id)
        return usage.total_tokens_used < usage.token_limit

    def commit_usage(self, user_id: str, tokens: int) -> Optional[UserUsage]:
        if not tokens or tokens <= 0:
            return None
        if self._use_fallback():
            return self._fallback.commit_usage(user_id, tokens)
        doc = self._usage.find_one_and_update(  # type: ignore[union-attr]
            {"user_id": user_id},
            {
                "$inc": {"total_tokens_used": int(tokens)},
                "$set": {"updated_at": now_iso()},
                "$setOnInsert": self._insert_defaults(),
            },
            upsert=True,
            return_document=True,
        )
        usage = self._to_usage(doc or {"user_id": user_id})
        logger.debug(
            "user_usage_updated",
            extra={"user_id": user_id, "tokens": tokens, "total": usage.total_tokens_used},
        )
        return usage
