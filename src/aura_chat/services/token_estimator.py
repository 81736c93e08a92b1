from __future__ import annotations

"""Token counting for billing and quota accounting.

Counts prefer the provider's exact counting endpoint and fall back to a
character heuristic when that call fails. Every result, exact or estimated,
is cached per model keyed by the exact text, so repeated counts of the same
text are stable within a process. The system instruction is counted once per
model.
"""

from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple
import logging
import math
import re

from ..config import ChatConfig, get_chat_config
from ..observability.metrics import TOKEN_COUNTS
from .gemini_client import CompletionProvider, get_completion_provider


logger = logging.getLogger(__name__)

CountMethod = Literal["exact", "estimated"]

_SPECIAL_CHARS = re.compile(r"[^A-Za-z0-9_\s]")


@dataclass(frozen=True)
class TokenCount:
    tokens: int
    method: CountMethod
    cache_hit: bool = False
    text_tokens: int = 0
    system_tokens: int = 0
    overhead_tokens: int = 0

    @property
    def estimated(self) -> bool:
        return self.method == "estimated"


class TokenCache:
    """Thread-safe per-model cache of token counts.

    Entries keep the method that produced them. Two threads missing on the
    same text may both compute it; the later write wins with an equal value.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[str, Dict[str, Tuple[int, CountMethod]]] = {}
        self._system: Dict[str, Tuple[int, CountMethod]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, model: str, text: str) -> Optional[Tuple[int, CountMethod]]:
        with self._lock:
            entry = self._entries.get(model, {}).get(text)
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
            return entry

    def put(self, model: str, text: str, tokens: int, method: CountMethod) -> None:
        with self._lock:
            self._entries.setdefault(model, {})[text] = (tokens, method)

    def get_system(self, model: str) -> Optional[Tuple[int, CountMethod]]:
        with self._lock:
            return self._system.get(model)

    def put_system(self, model: str, tokens: int, method: CountMethod) -> None:
        with self._lock:
            self._system[model] = (tokens, method)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._system.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": sum(len(v) for v in self._entries.values()),
                "models": sorted(self._entries.keys()),
                "system_prompts": len(self._system),
                "hits": self._hits,
                "misses": self._misses,
            }


def heuristic_tokens(text: str) -> int:
    """Approximate token count: ~4 chars per token, inflated for punctuation."""
    if not text:
        return 0
    base = math.ceil(len(text) / 4)
    special = len(_SPECIAL_CHARS.findall(text))
    return math.ceil(base * (1 + 0.02 * special) * 1.03)


class TokenEstimator:
    def __init__(
        self,
        provider: Optional[CompletionProvider] = None,
        config: Optional[ChatConfig] = None,
        cache: Optional[TokenCache] = None,
    ) -> None:
        self._provider = provider
        self.config = config or get_chat_config()
        self.cache = cache if cache is not None else TokenCache()

    @property
    def provider(self) -> CompletionProvider:
        if self._provider is None:
            self._provider = get_completion_provider()
        return self._provider

    def estimate(self, text: str) -> int:
        return heuristic_tokens(text)

    def _count(self, text: str, model: str) -> Tuple[int, CountMethod]:
        try:
            tokens = int(self.provider.count_tokens(text, model))
            return max(0, tokens), "exact"
        except Exception as exc:
            logger.warning("token_count_fallback", extra={"model": model, "err": str(exc)})
            return heuristic_tokens(text), "estimated"

    def count_tokens(self, text: str, model: Optional[str] = None) -> TokenCount:
        """Count tokens for ``text``; never raises."""
        model = model or self.config.model
        if not text or not text.strip():
            return TokenCount(tokens=0, method="exact", text_tokens=0)
        cached = self.cache.get(model, text)
        if cached is not None:
            tokens, method = cached
            TOKEN_COUNTS.labels(method=method, cache="hit").inc()
            return TokenCount(tokens=tokens, method=method, cache_hit=True, text_tokens=tokens)
        tokens, method = self._count(text, model)
        self.cache.put(model, text, tokens, method)
        TOKEN_COUNTS.labels(method=method, cache="miss").inc()
        return TokenCount(tokens=tokens, method=method, text_tokens=tokens)

    def _system_prompt_count(self, model: str) -> Tuple[int, CountMethod]:
        cached = self.cache.get_system(model)
        if cached is not None:
            return cached
        prompt = self.config.system_prompt
        if not prompt or not prompt.strip():
            tokens, method = 0, "exact"
        else:
            tokens, method = self._count(prompt, model)
        self.cache.put_system(model, tokens, method)
        logger.info("system_prompt_tokens_cached", extra={"model": model, "tokens": tokens, "method": method})
        return tokens, method

    def count_system_prompt_tokens(self, model: Optional[str] = None) -> int:
        return self._system_prompt_count(model or self.config.model)[0]

    def exchange_tokens(self, user_text: str, assistant_text: str, model: Optional[str] = None) -> TokenCount:
        """Billable tokens for one exchange: both turns, the system prompt and a fixed overhead."""
        model = model or self.config.model
        user = self.count_tokens(user_text, model)
        assistant = self.count_tokens(assistant_text, model)
        system_tokens, system_method = self._system_prompt_count(model)
        overhead = self.config.exchange_overhead_tokens
        text_tokens = user.tokens + assistant.tokens
        exact = user.method == "exact" and assistant.method == "exact" and system_method == "exact"
        return TokenCount(
            tokens=text_tokens + system_tokens + overhead,
            method="exact" if exact else "estimated",
            cache_hit=user.cache_hit and assistant.cache_hit,
            text_tokens=text_tokens,
            system_tokens=system_tokens,
            overhead_tokens=overhead,
        )

    def session_token_stats(self, messages: Iterable[Any], model: Optional[str] = None) -> Dict[str, Any]:
        """Summarize token usage across stored messages.

        Messages with a back-filled ``tokens_consumed`` are taken as-is; the
        rest are counted.
        """
        model = model or self.config.model
        per_message: List[Dict[str, Any]] = []
        total = 0
        estimated = False
        for msg in messages:
            content = getattr(msg, "content", "") or ""
            stored = int(getattr(msg, "tokens_consumed", 0) or 0)
            if stored > 0:
                tokens, method = stored, "stored"
            else:
                count = self.count_tokens(content, model)
                tokens, method = count.tokens, count.method
                estimated = estimated or count.estimated
            total += tokens
            per_message.append(
                {
                    "message_id": getattr(msg, "message_id", None),
                    "role": getattr(msg, "role", None),
                    "tokens": tokens,
                    "method": method,
                }
            )
        count_messages = len(per_message)
        return {
            "total_tokens": total,
            "message_count": count_messages,
            "average_tokens": round(total / count_messages, 2) if count_messages else 0.0,
            "system_tokens": self.count_system_prompt_tokens(model),
            "estimated": estimated,
            "messages": per_message,
        }


_estimator: TokenEstimator | None = None


def get_token_estimator() -> TokenEstimator:
    global _estimator
    if _estimator is None:
        _estimator = TokenEstimator()
    return _estimator


def reset_token_estimator() -> None:
    global _estimator
    _estimator = None
