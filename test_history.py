"""Tests for chat history storage (in-memory and SQLite)."""

import pytest

from saga_gm.history import (
    ChatEvent,
    InMemoryRepo,
    SQLiteRepo,
    create_repository,
    to_normalized_messages,
)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryRepo()
    return SQLiteRepo(str(tmp_path / "history.db"))


def _user(conversation_id, content, request_id=None):
    extra = {"request_id": request_id} if request_id else {}
    return ChatEvent(
        conversation_id=conversation_id, type="user_message", role="user", content=content, extra=extra
    )


def _assistant(conversation_id, content, request_id=None):
    extra = {"request_id": request_id} if request_id else {}
    return ChatEvent(
        conversation_id=conversation_id,
        type="assistant_message",
        role="assistant",
        content=content,
        extra=extra,
    )


async def test_events_get_increasing_sequence_numbers(repo):
    await repo.add_event(_user("p1", "hello"))
    await repo.add_event(_assistant("p1", "greetings"))

    events = await repo.get_events("p1")
    assert [e.seq for e in events] == [1, 2]
    assert [e.content for e in events] == ["hello", "greetings"]


async def test_duplicate_request_id_is_rejected(repo):
    assert await repo.add_event(_user("p1", "look around", request_id="r1"))
    assert not await repo.add_event(_user("p1", "look around", request_id="r1"))
    # Same request id in another conversation is independent
    assert await repo.add_event(_user("p2", "look around", request_id="r1"))

    assert len(await repo.get_events("p1")) == 1


async def test_history_returns_latest_window_oldest_first(repo):
    for i in range(5):
        await repo.add_event(_user("p1", f"msg {i}"))

    history = await repo.get_conversation_history("p1", limit=3)
    assert [e.content for e in history] == ["msg 2", "msg 3", "msg 4"]


async def test_history_excludes_tool_results(repo):
    await repo.add_event(_user("p1", "buy a potion"))
    await repo.add_event(
        ChatEvent(
            conversation_id="p1",
            type="tool_result",
            role="tool",
            content='{"success": true}',
            tool_name="add_item",
        )
    )
    await repo.add_event(_assistant("p1", "The merchant hands you a potion."))

    history = await repo.get_conversation_history("p1", limit=10)
    assert [e.type for e in history] == ["user_message", "assistant_message"]
    assert len(await repo.get_events("p1")) == 3


async def test_lookup_by_request_id(repo):
    await repo.add_event(_assistant("p1", "stored reply", request_id="assistant:r9"))

    found = await repo.get_event_by_request_id("p1", "assistant:r9")
    assert found is not None
    assert found.content == "stored reply"
    assert await repo.get_event_by_request_id("p1", "assistant:missing") is None


async def test_clear_conversation(repo):
    await repo.add_event(_user("p1", "a", request_id="r1"))
    await repo.add_event(_user("p1", "b"))
    await repo.add_event(_user("p2", "c"))

    assert await repo.clear_conversation("p1") == 2
    assert await repo.get_events("p1") == []
    assert await repo.list_conversations() == ["p2"]
    # The request id is free again after clearing
    assert await repo.add_event(_user("p1", "a", request_id="r1"))


async def test_sqlite_round_trips_extra_fields(tmp_path):
    repo = SQLiteRepo(str(tmp_path / "history.db"))
    await repo.add_event(
        ChatEvent(
            conversation_id="p1",
            type="assistant_message",
            role="assistant",
            content="你找到了一把钥匙。",
            model="gpt-4o-mini",
            extra={"request_id": "assistant:r1", "tools": ["add_item"]},
        )
    )

    (event,) = await repo.get_events("p1")
    assert event.content == "你找到了一把钥匙。"
    assert event.model == "gpt-4o-mini"
    assert event.extra["tools"] == ["add_item"]
    assert event.request_id == "assistant:r1"


def test_to_normalized_messages():
    events = [
        _user("p1", "hi"),
        ChatEvent(conversation_id="p1", type="tool_result", role="tool", content="{}"),
        _assistant("p1", "hello traveller"),
        _assistant("p1", ""),
    ]
    messages = to_normalized_messages(events)
    assert [(m.role, m.content) for m in messages] == [("user", "hi"), ("assistant", "hello traveller")]


def test_create_repository(tmp_path):
    assert isinstance(create_repository({"type": "memory"}), InMemoryRepo)
    sqlite_repo = create_repository({"type": "sqlite", "path": str(tmp_path / "x.db")})
    assert isinstance(sqlite_repo, SQLiteRepo)
    with pytest.raises(ValueError):
        create_repository({"type": "redis"})
