import asyncio

import pytest

from src.aura_chat.config import ChatConfig
from src.aura_chat.domain.chat_models import DoneEvent, ErrorEvent, FragmentEvent
from src.aura_chat.domain.errors import Forbidden, InvalidRequest, NotFound, QuotaExceeded
from src.aura_chat.infrastructure.chat_store import InMemoryChatStore
from src.aura_chat.infrastructure.usage_ledger import InMemoryUsageLedger
from src.aura_chat.services.chat_stream import ChatStreamOrchestrator, SHORTER_MESSAGE_HINT, extract_fragment_text
from src.aura_chat.services.gemini_client import ProviderError
from src.aura_chat.services.token_estimator import TokenCache, TokenEstimator, heuristic_tokens
from .utils import FakeProvider, chunk


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store():
    return InMemoryChatStore(max_active_chats=5)


@pytest.fixture
def ledger():
    return InMemoryUsageLedger(default_token_limit=1000)


@pytest.fixture
def orchestrator(store, ledger, provider):
    cfg = ChatConfig(system_prompt="Be helpful.", model="test-model")
    estimator = TokenEstimator(provider=provider, config=cfg, cache=TokenCache())
    return ChatStreamOrchestrator(store=store, ledger=ledger, estimator=estimator, provider=provider, config=cfg)


async def _collect(agen):
    return [event async for event in agen]


def _run(exchange):
    return asyncio.run(_collect(exchange.events()))


def test_happy_path_streams_persists_and_bills(orchestrator, store, ledger, provider):
    chat = store.create_chat("u1")
    provider.reply_with("Hello", " there", " friend")

    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))

    assert [e.text for e in events if isinstance(e, FragmentEvent)] == ["Hello", " there", " friend"]
    done = events[-1]
    assert isinstance(done, DoneEvent)
    # 1 (user) + 3 (assistant) + 2 (system prompt) + 10 overhead
    assert done.tokens_used == 16

    messages, total = store.list_messages(chat.chat_id, "u1")
    assert total == 2
    user_msg, assistant_msg = messages
    assert (user_msg.role, user_msg.content, user_msg.tokens_consumed) == ("user", "hi", 0)
    assert assistant_msg.role == "assistant"
    assert assistant_msg.content == "Hello there friend"
    assert assistant_msg.tokens_consumed == 16
    assert assistant_msg.message_id == done.message_id
    assert assistant_msg.metadata["fragments"] == 3
    assert assistant_msg.metadata["model"] == "test-model"
    assert ledger.get_usage("u1").total_tokens_used == 16
    assert provider.streams[0].closed


def test_context_sent_to_provider_includes_history(orchestrator, store, provider):
    chat = store.create_chat("u1")
    provider.reply_with("first answer")
    _run(orchestrator.begin(chat.chat_id, "u1", "first"))
    provider.reply_with("second answer")
    _run(orchestrator.begin(chat.chat_id, "u1", "second"))

    contents = provider.opened[1]
    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert contents[-1]["parts"][0]["text"] == "second"


def test_quota_exhausted_refuses_before_any_side_effect(orchestrator, store, ledger, provider):
    chat = store.create_chat("u1")
    ledger.commit_usage("u1", 1000)
    with pytest.raises(QuotaExceeded) as exc:
        orchestrator.begin(chat.chat_id, "u1", "hi")
    assert exc.value.code == "TOKEN_LIMIT_EXCEEDED"
    assert provider.opened == []
    assert store.list_messages(chat.chat_id, "u1")[1] == 0


def test_usage_just_below_limit_is_still_allowed(orchestrator, store, ledger, provider):
    chat = store.create_chat("u1")
    ledger.commit_usage("u1", 999)
    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))
    assert isinstance(events[-1], DoneEvent)
    assert ledger.get_usage("u1").total_tokens_used > 1000


def test_concurrent_sends_both_pass_gate_then_next_is_refused(orchestrator, store, ledger, provider):
    chat_a = store.create_chat("u1")
    chat_b = store.create_chat("u1")
    ledger.commit_usage("u1", 999)
    provider.reply_with("reply one")
    provider.reply_with("reply two")

    first = orchestrator.begin(chat_a.chat_id, "u1", "hi")
    second = orchestrator.begin(chat_b.chat_id, "u1", "hello")

    async def both():
        return await asyncio.gather(_collect(first.events()), _collect(second.events()))

    results = asyncio.run(both())
    assert all(isinstance(events[-1], DoneEvent) for events in results)
    expected = 999 + sum(events[-1].tokens_used for events in results)
    assert ledger.get_usage("u1").total_tokens_used == expected
    with pytest.raises(QuotaExceeded):
        orchestrator.begin(chat_a.chat_id, "u1", "again")


def test_unknown_deleted_and_foreign_chats(orchestrator, store, provider):
    chat = store.create_chat("owner")
    with pytest.raises(NotFound):
        orchestrator.begin("does-not-exist", "owner", "hi")
    with pytest.raises(Forbidden):
        orchestrator.begin(chat.chat_id, "intruder", "hi")
    store.deactivate_chat(chat.chat_id, "owner")
    with pytest.raises(NotFound):
        orchestrator.begin(chat.chat_id, "owner", "hi")
    assert provider.opened == []


@pytest.mark.parametrize("text", ["", "   ", "x" * 5001, None])
def test_invalid_messages_are_rejected(orchestrator, store, text):
    chat = store.create_chat("u1")
    with pytest.raises(InvalidRequest):
        orchestrator.begin(chat.chat_id, "u1", text)


def test_message_is_trimmed(orchestrator, store, provider):
    chat = store.create_chat("u1")
    _run(orchestrator.begin(chat.chat_id, "u1", "  hi  "))
    messages, _ = store.list_messages(chat.chat_id, "u1")
    assert messages[0].content == "hi"


def test_open_failure_yields_error_and_keeps_user_turn(orchestrator, store, ledger, provider):
    chat = store.create_chat("u1")
    provider.open_error = ProviderError("boom", status=503)
    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].code == "STREAM_ERROR"
    messages, total = store.list_messages(chat.chat_id, "u1")
    assert total == 1 and messages[0].role == "user"
    assert ledger.get_usage("u1").total_tokens_used == 0


def test_bad_request_from_provider_suggests_shorter_message(orchestrator, store, provider):
    chat = store.create_chat("u1")
    provider.open_error = ProviderError("too long", status=400)
    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))
    assert events[-1].message == SHORTER_MESSAGE_HINT


def test_mid_stream_failure_ends_with_error_event(orchestrator, store, provider):
    chat = store.create_chat("u1")
    provider.reply_with_chunks([chunk("partial"), ProviderError("reset")])
    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))

    assert isinstance(events[0], FragmentEvent)
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].code == "STREAM_ERROR"
    assert provider.streams[0].closed
    _, total = store.list_messages(chat.chat_id, "u1")
    assert total == 1


def test_malformed_fragments_are_skipped(orchestrator, store, provider):
    chat = store.create_chat("u1")
    provider.reply_with_chunks([chunk("a"), {"unexpected": True}, {"candidates": [{"finishReason": "STOP"}]}, chunk("b")])
    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))
    assert [e.text for e in events if isinstance(e, FragmentEvent)] == ["a", "b"]
    assert isinstance(events[-1], DoneEvent)
    messages, _ = store.list_messages(chat.chat_id, "u1")
    assert messages[-1].content == "ab"


def test_provider_error_payload_in_stream(orchestrator, store, provider):
    chat = store.create_chat("u1")
    provider.reply_with_chunks([{"error": {"code": 500, "message": "internal"}}])
    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].code == "STREAM_ERROR"


def test_multiline_fragments_are_preserved(orchestrator, store, provider):
    chat = store.create_chat("u1")
    provider.reply_with("line one\n\nline two")
    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))
    assert events[0].text == "line one\n\nline two"


def test_ledger_failure_is_logged_not_surfaced(orchestrator, store, provider, monkeypatch):
    chat = store.create_chat("u1")

    def broken_commit(user_id, tokens):
        raise RuntimeError("ledger down")

    monkeypatch.setattr(orchestrator.ledger, "commit_usage", broken_commit)
    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))
    done = events[-1]
    assert isinstance(done, DoneEvent)
    messages, _ = store.list_messages(chat.chat_id, "u1")
    assert messages[-1].tokens_consumed == done.tokens_used


def test_client_disconnect_closes_stream_and_keeps_partial_reply(orchestrator, store, ledger, provider):
    chat = store.create_chat("u1")
    provider.reply_with("Once", " upon", " a", " time")
    exchange = orchestrator.begin(chat.chat_id, "u1", "tell me a story")

    async def consume_two_then_disconnect():
        events = exchange.events()
        received = [await events.__anext__(), await events.__anext__()]
        await events.aclose()
        return received

    received = asyncio.run(consume_two_then_disconnect())
    assert [e.text for e in received] == ["Once", " upon"]

    stream = provider.streams[0]
    assert stream.closed
    assert stream.consumed == 2

    messages, total = store.list_messages(chat.chat_id, "u1")
    assert total == 2
    user_msg, partial = messages
    assert user_msg.content == "tell me a story"
    assert partial.content == "Once upon"
    assert partial.metadata["partial"] is True
    assert partial.metadata["cancelled"] is True
    assert partial.tokens_consumed == heuristic_tokens("Once upon")
    assert ledger.get_usage("u1").total_tokens_used == heuristic_tokens("Once upon")


def test_disconnect_after_first_fragment_keeps_it(orchestrator, store, ledger, provider):
    chat = store.create_chat("u1")
    exchange = orchestrator.begin(chat.chat_id, "u1", "hi")

    async def disconnect_immediately():
        events = exchange.events()
        await events.__anext__()
        await events.aclose()

    provider.reply_with("only")
    asyncio.run(disconnect_immediately())
    messages, _ = store.list_messages(chat.chat_id, "u1")
    assert [m.role for m in messages] == ["user", "assistant"]


def test_disconnect_closes_the_provider_reader(orchestrator, store, provider):
    chat = store.create_chat("u1")
    provider.reply_with("one", " two", " three")
    exchange = orchestrator.begin(chat.chat_id, "u1", "count")
    reader = exchange._fragments
    finished = []

    async def tracked_fragments():
        try:
            async for text in reader():
                yield text
        finally:
            finished.append(True)

    exchange._fragments = tracked_fragments

    async def disconnect_after_first():
        events = exchange.events()
        await events.__anext__()
        await events.aclose()
        return list(finished)

    assert asyncio.run(disconnect_after_first()) == [True]
    assert provider.streams[0].closed


def test_chat_deleted_after_begin_ends_with_not_found(orchestrator, store, ledger, provider):
    chat = store.create_chat("u1")
    exchange = orchestrator.begin(chat.chat_id, "u1", "hi")
    store.deactivate_chat(chat.chat_id, "u1")

    events = _run(exchange)

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].code == "CHAT_NOT_FOUND"
    assert store._messages.get(chat.chat_id, []) == []
    assert provider.opened == []
    assert ledger.get_usage("u1").total_tokens_used == 0


def test_unexpected_count_failure_still_completes_and_bills(orchestrator, store, ledger, provider):
    chat = store.create_chat("u1")
    provider.reply_with("Hello", " there")
    provider.count_error = RuntimeError("connection reset")

    events = _run(orchestrator.begin(chat.chat_id, "u1", "hi"))

    done = events[-1]
    assert isinstance(done, DoneEvent)
    expected = heuristic_tokens("hi") + heuristic_tokens("Hello there") + heuristic_tokens("Be helpful.") + 10
    assert done.tokens_used == expected
    assert ledger.get_usage("u1").total_tokens_used == expected
    messages, _ = store.list_messages(chat.chat_id, "u1")
    assert messages[-1].tokens_consumed == expected


def test_send_message_turns_refusals_into_error_events(orchestrator, provider):
    events = asyncio.run(_collect(orchestrator.send_message("missing", "u1", "hi")))
    assert len(events) == 1
    assert events[0].code == "CHAT_NOT_FOUND"


def test_extract_fragment_text_shapes():
    assert extract_fragment_text(chunk("x")) == "x"
    assert extract_fragment_text({"candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}]}) == "ab"
    assert extract_fragment_text({"candidates": [{"finishReason": "SAFETY"}]}) == ""
    assert extract_fragment_text({"usageMetadata": {}}) is None
    assert extract_fragment_text("not a dict") is None
    assert extract_fragment_text({"candidates": [{"content": {"parts": "bad"}}]}) is None
