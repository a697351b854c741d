from datetime import UTC, datetime, timedelta

import pytest

from src.parley.domain.chat_models import AssistantTurn, UserTurn
from src.parley.domain.errors import AccessDenied, NotFound
from src.parley.infrastructure.conversation_store import (
    InMemoryConversationStore,
    build_conversation_store,
    make_title,
)
from src.parley.infrastructure.conversation_store_sql import SqlConversationStore


T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)


def at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


def user_turn(conversation_id, content="hello", owner="alice", ts=T0, is_new=False):
    return UserTurn(owner_account_id=owner, conversation_id=conversation_id, is_new=is_new, content=content, timestamp=ts)


def assistant_turn(conversation_id, content="hi!", ts=T0, message_id="a1"):
    return AssistantTurn(conversation_id=conversation_id, assistant_message_id=message_id, content=content, timestamp=ts)


def test_first_user_turn_creates_conversation_with_title(store):
    content = "x" * 150
    message_id = store.persist_user_turn(user_turn("c1", content=content, ts=at(0), is_new=True))

    conv = store.get_conversation("c1")
    assert conv is not None
    assert conv.owner_account_id == "alice"
    assert conv.title == "x" * 100
    assert conv.created_at == at(0)
    assert conv.updated_at == at(0)

    messages = store.list_recent_messages("c1", 20)
    assert [(m.id, m.role, m.content) for m in messages] == [(message_id, "user", content)]


def test_turns_bump_updated_at_but_never_move_it_backwards(store):
    store.persist_user_turn(user_turn("c1", ts=at(10), is_new=True))
    store.persist_assistant_turn(assistant_turn("c1", ts=at(12)))
    assert store.get_conversation("c1").updated_at == at(12)

    store.persist_user_turn(user_turn("c1", content="late", ts=at(5)))
    conv = store.get_conversation("c1")
    assert conv.updated_at == at(12)
    assert conv.created_at == at(10)
    assert conv.title == "hello"


def test_recent_messages_are_oldest_first_and_bounded(store):
    store.persist_user_turn(user_turn("c1", content="m0", ts=at(0), is_new=True))
    for i in range(1, 30):
        store.persist_user_turn(user_turn("c1", content=f"m{i}", ts=at(i)))

    recent = store.list_recent_messages("c1", 20)
    assert [m.content for m in recent] == [f"m{i}" for i in range(10, 30)]
    assert store.list_recent_messages("c1", 0) == []
    assert store.list_recent_messages("missing", 20) == []


def test_equal_timestamps_keep_insertion_order(store):
    store.persist_user_turn(user_turn("c1", content="question", ts=at(0), is_new=True))
    store.persist_assistant_turn(assistant_turn("c1", content="answer", ts=at(0)))

    assert [m.content for m in store.list_recent_messages("c1", 10)] == ["question", "answer"]


def test_messages_do_not_leak_between_conversations(store):
    store.persist_user_turn(user_turn("c1", content="one", ts=at(0), is_new=True))
    store.persist_user_turn(user_turn("c2", content="two", ts=at(1), is_new=True))

    assert [m.content for m in store.list_recent_messages("c1", 20)] == ["one"]
    assert [m.content for m in store.list_recent_messages("c2", 20)] == ["two"]
    assert store.count_messages("c1") == 1


def test_list_messages_pages_from_newest_and_reports_has_more(store):
    store.persist_user_turn(user_turn("c1", content="m0", ts=at(0), is_new=True))
    for i in range(1, 5):
        store.persist_user_turn(user_turn("c1", content=f"m{i}", ts=at(i)))

    page, has_more = store.list_messages("c1", limit=2)
    assert [m.content for m in page] == ["m3", "m4"]
    assert has_more is True

    page, has_more = store.list_messages("c1", limit=2, offset=2)
    assert [m.content for m in page] == ["m1", "m2"]
    assert has_more is True

    page, has_more = store.list_messages("c1", limit=2, offset=4)
    assert [m.content for m in page] == ["m0"]
    assert has_more is False


def test_list_conversations_orders_by_activity_with_stats(store):
    store.persist_user_turn(user_turn("old", content="first", ts=at(0), is_new=True))
    store.persist_user_turn(user_turn("new", content="second", ts=at(5), is_new=True))
    store.persist_assistant_turn(assistant_turn("new", ts=at(6)))
    store.persist_user_turn(user_turn("bob-conv", owner="bob", ts=at(7), is_new=True))

    summaries = store.list_conversations("alice")
    assert [s.id for s in summaries] == ["new", "old"]
    assert summaries[0].message_count == 2
    assert summaries[0].last_message_at == at(6)
    assert summaries[0].title == "second"
    assert summaries[1].message_count == 1

    assert [s.id for s in store.list_conversations("alice", limit=1)] == ["new"]
    assert store.list_conversations("carol") == []


def test_user_turn_into_foreign_conversation_is_rejected(store):
    store.persist_user_turn(user_turn("c1", owner="alice", ts=at(0), is_new=True))

    with pytest.raises(AccessDenied):
        store.persist_user_turn(user_turn("c1", owner="bob", content="sneaky", ts=at(1)))

    assert store.count_messages("c1") == 1
    assert store.get_conversation("c1").updated_at == at(0)


def test_assistant_turn_requires_existing_conversation(store):
    with pytest.raises(NotFound):
        store.persist_assistant_turn(assistant_turn("missing"))
    assert store.get_conversation("missing") is None


def test_delete_conversation_removes_messages(store):
    store.persist_user_turn(user_turn("c1", ts=at(0), is_new=True))
    store.persist_assistant_turn(assistant_turn("c1", ts=at(1)))

    assert store.delete_conversation("c1") is True
    assert store.get_conversation("c1") is None
    assert store.count_messages("c1") == 0
    assert store.delete_conversation("c1") is False


def test_sql_user_turn_rolls_back_as_a_unit(monkeypatch):
    store = SqlConversationStore.from_url("sqlite:///:memory:")

    def boom(session, conversation_id):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "_next_seq", boom)
    with pytest.raises(RuntimeError):
        store.persist_user_turn(user_turn("c1", ts=at(0), is_new=True))

    # the flushed conversation row must not survive without its message
    assert store.get_conversation("c1") is None
    assert store.count_messages("c1") == 0


def test_sql_store_returns_utc_aware_timestamps():
    store = SqlConversationStore.from_url("sqlite:///:memory:")
    store.persist_user_turn(user_turn("c1", ts=at(0), is_new=True))

    conv = store.get_conversation("c1")
    assert conv.created_at.tzinfo is not None
    assert store.list_recent_messages("c1", 1)[0].created_at == at(0)


def test_make_title_truncates_to_hundred_chars():
    assert make_title("short") == "short"
    assert len(make_title("y" * 101)) == 100


def test_store_factory_defaults_to_memory(monkeypatch):
    monkeypatch.delenv("PARLEY_STORE_IMPL", raising=False)
    first = build_conversation_store()
    assert isinstance(first, InMemoryConversationStore)
    assert build_conversation_store() is not first


def test_store_factory_builds_sql_and_rejects_unknown():
    assert isinstance(build_conversation_store("sql", "sqlite:///:memory:"), SqlConversationStore)
    with pytest.raises(ValueError):
        build_conversation_store("mongo")
