import pytest

from src.aura_chat.domain.errors import Forbidden, NotFound, QuotaExceeded
from src.aura_chat.infrastructure import chat_store


@pytest.fixture
def fresh_store(monkeypatch):
    monkeypatch.setattr(chat_store, "_store", None, raising=False)
    monkeypatch.delenv("AURA_STORE_IMPL", raising=False)
    return chat_store.InMemoryChatStore(max_active_chats=5)


def test_create_chat_defaults_title(fresh_store):
    chat = fresh_store.create_chat("u1")
    assert chat.title == "New Chat"
    assert chat.is_active
    assert chat.created_at.endswith("Z")


def test_sixth_active_chat_is_rejected_and_store_unchanged(fresh_store):
    for i in range(5):
        fresh_store.create_chat("u1", f"chat {i}")
    with pytest.raises(QuotaExceeded) as exc:
        fresh_store.create_chat("u1", "one too many")
    assert exc.value.code == "MAX_CHATS_EXCEEDED"
    assert exc.value.status_code == 403
    assert fresh_store.count_active_chats("u1") == 5
    # Other users are unaffected
    assert fresh_store.create_chat("u2").user_id == "u2"


def test_deleting_a_chat_frees_a_slot(fresh_store):
    chats = [fresh_store.create_chat("u1") for _ in range(5)]
    fresh_store.deactivate_chat(chats[0].chat_id, "u1")
    assert fresh_store.create_chat("u1").is_active


def test_listing_excludes_inactive_and_is_newest_first(fresh_store):
    first = fresh_store.create_chat("u1", "first")
    second = fresh_store.create_chat("u1", "second")
    third = fresh_store.create_chat("u1", "third")
    fresh_store.deactivate_chat(second.chat_id, "u1")

    chats, active = fresh_store.list_active_chats("u1")
    assert active == 2
    assert [c.chat_id for c in chats] == [third.chat_id, first.chat_id]
    assert all(c.is_active for c in chats)


def test_listing_pagination_reports_total_active(fresh_store):
    for i in range(4):
        fresh_store.create_chat("u1", f"c{i}")
    page, active = fresh_store.list_active_chats("u1", limit=2, offset=1)
    assert len(page) == 2
    assert active == 4


def test_get_owned_chat_enforces_ownership(fresh_store):
    chat = fresh_store.create_chat("owner")
    assert fresh_store.get_owned_chat(chat.chat_id, "owner").chat_id == chat.chat_id
    with pytest.raises(Forbidden):
        fresh_store.get_owned_chat(chat.chat_id, "intruder")
    with pytest.raises(NotFound):
        fresh_store.get_owned_chat("not-a-uuid", "owner")


def test_deactivated_chat_looks_missing(fresh_store):
    chat = fresh_store.create_chat("owner")
    fresh_store.deactivate_chat(chat.chat_id, "owner")
    with pytest.raises(NotFound):
        fresh_store.get_owned_chat(chat.chat_id, "owner")
    with pytest.raises(NotFound):
        fresh_store.list_messages(chat.chat_id, "owner")


def test_deactivated_chat_refuses_new_messages(fresh_store):
    chat = fresh_store.create_chat("owner")
    fresh_store.append_message(chat.chat_id, "user", "before")
    fresh_store.deactivate_chat(chat.chat_id, "owner")
    with pytest.raises(NotFound):
        fresh_store.append_message(chat.chat_id, "assistant", "after")
    assert [m.content for m in fresh_store._messages[chat.chat_id]] == ["before"]


def test_deactivate_is_idempotent_for_owner(fresh_store):
    chat = fresh_store.create_chat("owner")
    first = fresh_store.deactivate_chat(chat.chat_id, "owner")
    again = fresh_store.deactivate_chat(chat.chat_id, "owner")
    assert not first.is_active and not again.is_active
    assert again.updated_at == first.updated_at
    with pytest.raises(Forbidden):
        fresh_store.deactivate_chat(chat.chat_id, "intruder")
    with pytest.raises(NotFound):
        fresh_store.deactivate_chat("missing", "owner")


def test_messages_keep_conversational_order(fresh_store):
    chat = fresh_store.create_chat("u1")
    for i in range(6):
        role = "user" if i % 2 == 0 else "assistant"
        fresh_store.append_message(chat.chat_id, role, f"m{i}")

    messages, total = fresh_store.list_messages(chat.chat_id, "u1")
    assert total == 6
    assert [m.content for m in messages] == [f"m{i}" for i in range(6)]
    stamps = [m.created_at for m in messages]
    assert stamps == sorted(stamps)


def test_recent_messages_returns_tail_oldest_first(fresh_store):
    chat = fresh_store.create_chat("u1")
    for i in range(5):
        fresh_store.append_message(chat.chat_id, "user", f"m{i}")
    recent = fresh_store.recent_messages(chat.chat_id, "u1", limit=3)
    assert [m.content for m in recent] == ["m2", "m3", "m4"]
    assert fresh_store.recent_messages(chat.chat_id, "u1", limit=0) == []


def test_set_message_tokens_backfills(fresh_store):
    chat = fresh_store.create_chat("u1")
    msg = fresh_store.append_message(chat.chat_id, "assistant", "hello", metadata={"model": "m"})
    assert msg.tokens_consumed == 0
    updated = fresh_store.set_message_tokens(msg.message_id, 42)
    assert updated.tokens_consumed == 42
    messages, _ = fresh_store.list_messages(chat.chat_id, "u1")
    assert messages[0].tokens_consumed == 42
    assert messages[0].metadata == {"model": "m"}
    with pytest.raises(KeyError):
        fresh_store.set_message_tokens("missing", 1)


def test_rename_chat(fresh_store):
    chat = fresh_store.create_chat("u1")
    renamed = fresh_store.rename_chat(chat.chat_id, "u1", "Portrait ideas")
    assert renamed.title == "Portrait ideas"
    with pytest.raises(Forbidden):
        fresh_store.rename_chat(chat.chat_id, "u2", "nope")


def test_get_chat_store_uses_configured_cap(monkeypatch):
    monkeypatch.setenv("MAX_CHATS_PER_USER", "2")
    from src.aura_chat import config

    config.reset_chat_config()
    store = chat_store.get_chat_store()
    assert store is chat_store.get_chat_store()
    store.create_chat("u1")
    store.create_chat("u1")
    with pytest.raises(QuotaExceeded):
        store.create_chat("u1")
