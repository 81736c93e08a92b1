from __future__ import annotations

"""Send-a-message pipeline: ownership, quota, context, generation, persistence, usage.

``ChatStreamOrchestrator.begin`` performs every check that can refuse a send
(ownership, token quota, context loading) without side effects, so callers
can turn those failures into ordinary error responses. The returned
``Exchange`` then drives the rest as an async generator of stream events:

    exchange = orchestrator.begin(chat_id, user_id, text)
    async for event in exchange.events():
        ...

The generator always finishes with a ``DoneEvent`` or an ``ErrorEvent``
unless it is cancelled. On cancellation the provider response is closed, the
partial assistant text (if any) is stored with ``partial``/``cancelled``
metadata, and its heuristic token count is committed to the usage ledger.
"""

from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional
import asyncio
import logging
import time

from ..config import ChatConfig, get_chat_config
from ..domain.chat_models import Chat, ChatMessage, DoneEvent, ErrorEvent, FragmentEvent, StreamEvent
from ..domain.errors import ChatError, GenerationFailed, InternalError, InvalidRequest, QuotaExceeded
from ..infrastructure.chat_store import ChatStore, get_chat_store, now_iso
from ..infrastructure.usage_ledger import UsageLedger, get_usage_ledger
from ..observability.metrics import STREAM_FRAGMENTS, STREAM_OUTCOMES, TOKENS_CONSUMED
from .context_builder import build_context
from .gemini_client import CompletionProvider, CompletionStream, ProviderError, get_completion_provider
from .streaming import iter_in_threadpool
from .token_estimator import TokenEstimator, get_token_estimator


LOG = logging.getLogger("aura.chat")

SHORTER_MESSAGE_HINT = "The request could not be processed. Please try a shorter message."


def extract_fragment_text(chunk: Any) -> Optional[str]:
    """Text carried by one streamed provider chunk.

    Returns None when the chunk does not have the expected shape. A chunk
    with candidates but no text parts (e.g. a bare finish reason) yields "".
    """
    if not isinstance(chunk, dict):
        return None
    candidates = chunk.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0]
    if not isinstance(first, dict):
        return None
    content = first.get("content")
    if content is None:
        return ""
    parts = content.get("parts") if isinstance(content, dict) else None
    if parts is None:
        return ""
    if not isinstance(parts, list):
        return None
    texts: List[str] = []
    for part in parts:
        if isinstance(part, dict) and isinstance(part.get("text"), str):
            texts.append(part["text"])
    return "".join(texts)


class Exchange:
    """One accepted message send, streamed by ``events()``."""

    def __init__(
        self,
        orchestrator: "ChatStreamOrchestrator",
        chat: Chat,
        user_id: str,
        text: str,
        contents: List[Dict[str, Any]],
    ) -> None:
        self._orch = orchestrator
        self.chat = chat
        self.user_id = user_id
        self.text = text
        self.contents = contents
        self.model = orchestrator.config.model
        self.user_message: Optional[ChatMessage] = None
        self.assistant_message: Optional[ChatMessage] = None
        self._parts: List[str] = []
        self._stream: Optional[CompletionStream] = None

    @property
    def chat_id(self) -> str:
        return self.chat.chat_id

    @property
    def partial_text(self) -> str:
        return "".join(self._parts)

    def _log_extra(self, **kwargs: Any) -> Dict[str, Any]:
        extra = {"chat_id": self.chat_id, "user_id": self.user_id}
        extra.update(kwargs)
        return extra

    def _persist_user_turn(self) -> None:
        store = self._orch.store
        try:
            self.user_message = store.append_message(
                self.chat_id,
                "user",
                self.text,
                tokens=0,
                metadata={"source": "user", "timestamp": now_iso()},
            )
        except ChatError:
            raise
        except Exception as exc:
            raise InternalError("Failed to save message") from exc

    def _open_stream(self) -> CompletionStream:
        try:
            return self._orch.provider.open_stream(self.contents, self.model)
        except ProviderError as exc:
            LOG.error("stream_open_failed", extra=self._log_extra(status=exc.status, err=str(exc)))
            if exc.status == 400:
                raise GenerationFailed(SHORTER_MESSAGE_HINT) from exc
            raise GenerationFailed() from exc

    async def _fragments(self) -> AsyncIterator[str]:
        stream = self._open_stream()
        self._stream = stream
        try:
            async for chunk in iter_in_threadpool(stream):
                if isinstance(chunk, dict) and chunk.get("error"):
                    LOG.error("stream_provider_error", extra=self._log_extra(err=str(chunk.get("error"))[:300]))
                    raise GenerationFailed()
                text = extract_fragment_text(chunk)
                if text is None:
                    LOG.warning("stream_fragment_skipped", extra=self._log_extra())
                    continue
                if not text:
                    continue
                self._parts.append(text)
                yield text
        except ProviderError as exc:
            LOG.error("stream_read_failed", extra=self._log_extra(err=str(exc), fragments=len(self._parts)))
            raise GenerationFailed() from exc
        finally:
            stream.close()

    def _complete(self) -> DoneEvent:
        orch = self._orch
        full_text = self.partial_text
        try:
            assistant = orch.store.append_message(
                self.chat_id,
                "assistant",
                full_text,
                tokens=0,
                metadata={
                    "source": "gemini",
                    "model": self.model,
                    "fragments": len(self._parts),
                    "timestamp": now_iso(),
                },
            )
        except ChatError:
            raise
        except Exception as exc:
            raise InternalError("Failed to save response") from exc
        self.assistant_message = assistant

        count = orch.estimator.exchange_tokens(self.text, full_text, self.model)
        self._commit(count.tokens, count.method)
        try:
            self.assistant_message = orch.store.set_message_tokens(assistant.message_id, count.tokens)
        except (ChatError, KeyError) as exc:
            LOG.warning("token_backfill_failed", extra=self._log_extra(message_id=assistant.message_id, err=str(exc)))
        return DoneEvent(tokens_used=count.tokens, message_id=assistant.message_id)

    def _commit(self, tokens: int, method: str) -> None:
        try:
            self._orch.ledger.commit_usage(self.user_id, tokens)
        except Exception as exc:
            # Usage is best effort once the reply has been delivered
            LOG.error("usage_commit_failed", extra=self._log_extra(tokens=tokens, err=str(exc)))
            return
        TOKENS_CONSUMED.labels(method=method).inc(tokens)

    def _persist_partial(self) -> None:
        if self._stream is not None:
            self._stream.close()
        partial = self.partial_text
        LOG.info("stream_cancelled", extra=self._log_extra(fragments=len(self._parts), chars=len(partial)))
        if not partial:
            return
        orch = self._orch
        tokens = orch.estimator.estimate(partial)
        try:
            self.assistant_message = orch.store.append_message(
                self.chat_id,
                "assistant",
                partial,
                tokens=tokens,
                metadata={
                    "source": "gemini",
                    "model": self.model,
                    "fragments": len(self._parts),
                    "timestamp": now_iso(),
                    "partial": True,
                    "cancelled": True,
                },
            )
        except Exception as exc:
            LOG.error("partial_persist_failed", extra=self._log_extra(err=str(exc)))
            return
        self._commit(tokens, "estimated")

    async def events(self) -> AsyncIterator[StreamEvent]:
        started = time.perf_counter()
        try:
            self._persist_user_turn()
            async with aclosing(self._fragments()) as fragments:
                async for text in fragments:
                    STREAM_FRAGMENTS.inc()
                    yield FragmentEvent(text)
            done = self._complete()
        except (asyncio.CancelledError, GeneratorExit):
            STREAM_OUTCOMES.labels(outcome="cancelled").inc()
            self._persist_partial()
            raise
        except ChatError as exc:
            STREAM_OUTCOMES.labels(outcome="error").inc()
            LOG.warning("stream_failed", extra=self._log_extra(code=exc.code, fragments=len(self._parts)))
            yield ErrorEvent(code=exc.code, message=exc.message)
            return
        except Exception:
            STREAM_OUTCOMES.labels(outcome="error").inc()
            LOG.exception("stream_crashed", extra=self._log_extra())
            yield ErrorEvent(code=InternalError.code, message=InternalError.default_message)
            return
        STREAM_OUTCOMES.labels(outcome="completed").inc()
        LOG.info(
            "stream_completed",
            extra=self._log_extra(
                tokens=done.tokens_used,
                fragments=len(self._parts),
                duration_ms=int((time.perf_counter() - started) * 1000),
            ),
        )
        yield done


class ChatStreamOrchestrator:
    def __init__(
        self,
        store: Optional[ChatStore] = None,
        ledger: Optional[UsageLedger] = None,
        estimator: Optional[TokenEstimator] = None,
        provider: Optional[CompletionProvider] = None,
        config: Optional[ChatConfig] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._estimator = estimator
        self._provider = provider
        self.config = config or get_chat_config()

    @property
    def store(self) -> ChatStore:
        if self._store is None:
            self._store = get_chat_store()
        return self._store

    @property
    def ledger(self) -> UsageLedger:
        if self._ledger is None:
            self._ledger = get_usage_ledger()
        return self._ledger

    @property
    def estimator(self) -> TokenEstimator:
        if self._estimator is None:
            self._estimator = get_token_estimator()
        return self._estimator

    @property
    def provider(self) -> CompletionProvider:
        if self._provider is None:
            self._provider = get_completion_provider()
        return self._provider

    def validate_message(self, text: Any) -> str:
        if not isinstance(text, str):
            raise InvalidRequest("Message is required and must be a string")
        cleaned = text.strip()
        limit = self.config.max_message_length
        if not cleaned or len(cleaned) > limit:
            raise InvalidRequest(f"Message must be between 1 and {limit} characters")
        return cleaned

    def begin(self, chat_id: str, user_id: str, text: Any) -> Exchange:
        cleaned = self.validate_message(text)
        chat = self.store.get_owned_chat(chat_id, user_id)
        try:
            allowed = self.ledger.has_quota(user_id)
        except ChatError:
            raise
        except Exception as exc:
            LOG.error("quota_check_failed", extra={"user_id": user_id, "err": str(exc)})
            raise InternalError() from exc
        if not allowed:
            LOG.warning("token_limit_exceeded", extra={"user_id": user_id, "chat_id": chat_id})
            raise QuotaExceeded(QuotaExceeded.TOKENS)
        try:
            contents = build_context(self.store, chat_id, user_id, cleaned, self.config.context_window)
        except ChatError:
            raise
        except Exception as exc:
            raise InternalError("Failed to load conversation context") from exc
        LOG.debug("exchange_started", extra={"chat_id": chat_id, "user_id": user_id, "turns": len(contents)})
        return Exchange(self, chat, user_id, cleaned, contents)

    async def send_message(self, chat_id: str, user_id: str, text: Any) -> AsyncIterator[StreamEvent]:
        """``begin`` then ``events`` in one generator; refusals become error events."""
        try:
            exchange = self.begin(chat_id, user_id, text)
        except ChatError as exc:
            yield ErrorEvent(code=exc.code, message=exc.message)
            return
        async for event in exchange.events():
            yield event


_orchestrator: ChatStreamOrchestrator | None = None


def get_chat_orchestrator() -> ChatStreamOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ChatStreamOrchestrator()
    return _orchestrator


def reset_chat_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None
