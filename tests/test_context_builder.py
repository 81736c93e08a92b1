import pytest

from src.aura_chat.domain.errors import Forbidden
from src.aura_chat.infrastructure.chat_store import InMemoryChatStore
from src.aura_chat.services.context_builder import build_context


@pytest.fixture
def store():
    return InMemoryChatStore()


def test_new_chat_context_is_just_the_user_turn(store):
    chat = store.create_chat("u1")
    turns = build_context(store, chat.chat_id, "u1", "hi", window=10)
    assert turns == [{"role": "user", "parts": [{"text": "hi"}]}]


def test_roles_are_mapped_and_system_turns_dropped(store):
    chat = store.create_chat("u1")
    store.append_message(chat.chat_id, "system", "internal note")
    store.append_message(chat.chat_id, "user", "question")
    store.append_message(chat.chat_id, "assistant", "answer")
    turns = build_context(store, chat.chat_id, "u1", "follow up", window=10)
    assert [t["role"] for t in turns] == ["user", "model", "user"]
    assert [t["parts"][0]["text"] for t in turns] == ["question", "answer", "follow up"]


def test_window_keeps_most_recent_messages_oldest_first(store):
    chat = store.create_chat("u1")
    for i in range(12):
        store.append_message(chat.chat_id, "user" if i % 2 == 0 else "assistant", f"m{i}")
    turns = build_context(store, chat.chat_id, "u1", "new", window=10)
    assert len(turns) == 11
    assert turns[0]["parts"][0]["text"] == "m2"
    assert turns[-2]["parts"][0]["text"] == "m11"
    assert turns[-1] == {"role": "user", "parts": [{"text": "new"}]}


def test_context_reads_do_not_mutate_history(store):
    chat = store.create_chat("u1")
    store.append_message(chat.chat_id, "user", "m0")
    build_context(store, chat.chat_id, "u1", "new", window=10)
    _, total = store.list_messages(chat.chat_id, "u1")
    assert total == 1


def test_context_requires_ownership(store):
    chat = store.create_chat("u1")
    with pytest.raises(Forbidden):
        build_context(store, chat.chat_id, "u2", "hi", window=10)
