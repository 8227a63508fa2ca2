"""Tests for the recent-history window and its durable backing."""

import json

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from radiochat.database.models import ChatMessage
from radiochat.services.history_store import (
    MESSAGES_KEY,
    REBUILD_LOCK_KEY,
    HistoryStore,
    Message,
    ReplySnapshot,
)


@pytest.fixture
def history(database, redis_client):
    return HistoryStore(database, redis_client, history_limit=5)


def make(i: int, **kwargs) -> Message:
    return Message(author=f"user{i}", body=f"message {i}", origin_ip="1.1.1.1", created_at=1000.0 + i, **kwargs)


@pytest.mark.asyncio
async def test_append_and_read_oldest_first(history):
    for i in range(3):
        assert await history.append(make(i))

    result = await history.get_history()
    assert [m.body for m in result] == ["message 0", "message 1", "message 2"]


@pytest.mark.asyncio
async def test_window_is_bounded(history, redis_client):
    for i in range(8):
        await history.append(make(i))

    assert len(await redis_client.lrange(MESSAGES_KEY, 0, -1)) == 5
    result = await history.get_history()
    assert [m.body for m in result] == [f"message {i}" for i in range(3, 8)]


@pytest.mark.asyncio
async def test_limit_is_capped_and_respected(history):
    for i in range(5):
        await history.append(make(i))

    assert [m.body for m in await history.get_history(2)] == ["message 3", "message 4"]
    assert len(await history.get_history(500)) == 5
    assert await history.get_history(0) == []


@pytest.mark.asyncio
async def test_deleted_messages_are_hidden_when_served_from_cache(history):
    messages = [make(i) for i in range(3)]
    for m in messages:
        await history.append(m)

    assert await history.soft_delete(messages[1].id)

    result = await history.get_history()
    assert [m.id for m in result] == [messages[0].id, messages[2].id]


@pytest.mark.asyncio
async def test_rebuild_from_durable_store(history, redis_client):
    messages = [make(i) for i in range(4)]
    for m in messages:
        await history.append(m)
    await history.soft_delete(messages[0].id)
    await redis_client.delete(MESSAGES_KEY)

    rebuilt = await history.get_history()
    assert [m.id for m in rebuilt] == [m.id for m in messages[1:]]

    # Newest ends up at the head of the window
    head = json.loads((await redis_client.lrange(MESSAGES_KEY, 0, 0))[0])
    assert head["id"] == messages[-1].id
    assert not await redis_client.exists(REBUILD_LOCK_KEY)


@pytest.mark.asyncio
async def test_rebuilt_window_serves_without_another_rebuild(history, redis_client):
    for i in range(3):
        await history.append(make(i))
    await redis_client.delete(MESSAGES_KEY)

    first = await history.get_history()
    with patch.object(history, "rebuild", AsyncMock(side_effect=AssertionError("rebuilt twice"))):
        second = await history.get_history()

    assert first == second


@pytest.mark.asyncio
async def test_rebuild_skips_repopulate_when_lock_held(history, redis_client):
    await history.append(make(0))
    await redis_client.delete(MESSAGES_KEY)
    await redis_client.set_if_absent(REBUILD_LOCK_KEY, "1", ex=5)

    result = await history.get_history()

    assert [m.body for m in result] == ["message 0"]
    assert await redis_client.lrange(MESSAGES_KEY, 0, -1) == []


@pytest.mark.asyncio
async def test_durable_failure_keeps_cached_message(history, database):
    with patch(
        "sqlalchemy.ext.asyncio.AsyncSession.commit",
        side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")),
    ):
        assert await history.append(make(0))

    async with database.session() as session:
        rows = (await session.execute(select(ChatMessage))).scalars().all()
    assert rows == []
    # Deletion flags can still be read, the cache copy is served
    assert [m.body for m in await history.get_history()] == ["message 0"]


@pytest.mark.asyncio
async def test_cache_down_reads_durable_store(database, down_redis):
    history = HistoryStore(database, down_redis, history_limit=5)
    for i in range(3):
        assert await history.append(make(i))

    assert [m.body for m in await history.get_history()] == ["message 0", "message 1", "message 2"]


@pytest.mark.asyncio
async def test_reply_snapshot_is_stored(history, redis_client):
    original = make(0)
    await history.append(original)
    reply = make(1, reply_to_id=original.id, reply_snapshot=ReplySnapshot("user0", "message 0"))
    await history.append(reply)
    await redis_client.delete(MESSAGES_KEY)

    rebuilt = await history.get_history()
    assert rebuilt[1].reply_snapshot == ReplySnapshot("user0", "message 0")
    assert rebuilt[1].to_dict()["reply_to_id"] == original.id


@pytest.mark.asyncio
async def test_find_message(history, redis_client):
    target = make(0)
    await history.append(target)

    assert (await history.find_message(target.id)).body == "message 0"

    await redis_client.delete(MESSAGES_KEY)
    assert (await history.find_message(target.id)).body == "message 0"

    await history.soft_delete(target.id)
    assert await history.find_message(target.id) is None
    assert await history.find_message("msg_missing") is None


@pytest.mark.asyncio
async def test_clear(history, redis_client):
    for i in range(3):
        await history.append(make(i))

    assert await history.clear() == 3
    assert await redis_client.lrange(MESSAGES_KEY, 0, -1) == []
    assert await history.get_history() == []


def test_wire_shape():
    message = make(0, reply_to_id="msg_1", reply_snapshot=ReplySnapshot("bob", "hey"))
    data = message.to_dict()

    assert set(data) == {"id", "author", "body", "timestamp", "ip", "reply_to_id", "reply_snapshot"}
    assert data["reply_snapshot"] == {"author": "bob", "body": "hey"}
    assert Message.from_dict(data) == message
