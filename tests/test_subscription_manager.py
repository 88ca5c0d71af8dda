import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chatsync.models.models import ChatRoom, Message
from chatsync.services.event_log import EventLog
from chatsync.services.store import GuardedStore, MemoryStore
from chatsync.services.subscription_manager import (
    MessagesInRoom,
    RoomsForUser,
    Snapshot,
    SnapshotError,
    SubscriptionManager,
    order_rooms,
)
from tests.conftest import next_push, settle

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def message(i, room_id="r1", timestamp=T0):
    return Message(id=f"m{i}", chat_room_id=room_id, sender_id="alice", content=f"msg {i}", timestamp=timestamp)


@pytest.fixture
async def manager(memory_store):
    manager = SubscriptionManager(EventLog(memory_store))
    yield manager
    await manager.close()


async def test_first_push_is_current_snapshot(manager):
    await manager.event_log.append("messages:r1", "m1", message(1).to_record())

    subscription = manager.subscribe(MessagesInRoom("r1"))
    push = await next_push(subscription)

    assert isinstance(push, Snapshot)
    assert [m.id for m in push.items] == ["m1"]
    assert push.sequence == 1


async def test_pushes_full_snapshot_after_each_append(manager):
    subscription = manager.subscribe(MessagesInRoom("r1"))
    assert (await next_push(subscription)).items == []

    await manager.event_log.append("messages:r1", "m1", message(1).to_record())
    push = await next_push(subscription)
    assert [m.id for m in push.items] == ["m1"]

    await manager.event_log.append("messages:r1", "m2", message(2).to_record())
    push = await next_push(subscription)
    assert [m.id for m in push.items] == ["m1", "m2"]
    assert push.sequence == 2


async def test_other_collections_do_not_trigger_pushes(manager):
    pushes = []
    subscription = manager.subscribe(MessagesInRoom("r1"), sink=pushes.append)
    await next_push(subscription)

    await manager.event_log.append("messages:r2", "m1", message(1, room_id="r2").to_record())
    await settle()

    assert len(pushes) == 1


async def test_subscribers_of_one_query_share_a_pump(manager):
    first = manager.subscribe(MessagesInRoom("r1"))
    await next_push(first)

    second = manager.subscribe(MessagesInRoom("r1"))
    assert len(manager.groups) == 1
    # a late subscriber gets the current snapshot straight away
    assert (await next_push(second)).items == []

    await manager.event_log.append("messages:r1", "m1", message(1).to_record())
    assert [m.id for m in (await next_push(first)).items] == ["m1"]
    assert [m.id for m in (await next_push(second)).items] == ["m1"]


async def test_no_pushes_after_unsubscribe(manager):
    pushes = []
    subscription = manager.subscribe(MessagesInRoom("r1"), sink=pushes.append)
    await next_push(subscription)
    count = len(pushes)

    subscription.close()
    subscription.close()  # idempotent

    await manager.event_log.append("messages:r1", "m1", message(1).to_record())
    await settle()

    assert len(pushes) == count
    assert subscription.closed
    assert manager.groups == {}
    assert manager.subscription_count == 0
    with pytest.raises(StopAsyncIteration):
        await subscription.__anext__()


async def test_unsubscribe_keeps_other_subscribers(manager):
    a = manager.subscribe(MessagesInRoom("r1"))
    b = manager.subscribe(MessagesInRoom("r1"))
    await next_push(a)
    await next_push(b)

    manager.unsubscribe(a)
    await manager.event_log.append("messages:r1", "m1", message(1).to_record())

    assert [m.id for m in (await next_push(b)).items] == ["m1"]
    assert "messages:r1" in manager.groups


async def test_slow_consumer_only_sees_latest_snapshot(manager):
    subscription = manager.subscribe(MessagesInRoom("r1"))
    await settle()

    for i in range(1, 6):
        await manager.event_log.append("messages:r1", f"m{i}", message(i).to_record())
        await settle()

    push = await next_push(subscription)
    assert len(push.items) == 5
    assert subscription.dropped >= 1
    assert subscription.delivered >= 2
    assert manager.push_stats() == {"delivered": subscription.delivered, "dropped": subscription.dropped}

    pending = asyncio.ensure_future(subscription.__anext__())
    await settle()
    assert not pending.done()
    subscription.close()
    with pytest.raises(StopAsyncIteration):
        await pending


class FlakyStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.failures = 0

    async def query(self, collection, predicate=None, order=None, descending=False, limit=None):
        if self.failures and collection.startswith("messages:"):
            self.failures -= 1
            raise ConnectionError("store went away")
        return await super().query(collection, predicate, order, descending, limit)


async def test_store_error_is_pushed_and_subscription_recovers():
    store = FlakyStore()
    manager = SubscriptionManager(EventLog(GuardedStore(store, timeout=1)))
    try:
        subscription = manager.subscribe(MessagesInRoom("r1"))
        await next_push(subscription)

        store.failures = 1
        await manager.event_log.append("messages:r1", "m1", message(1).to_record())
        push = await next_push(subscription)
        assert isinstance(push, SnapshotError)
        assert push.error.code == "unavailable"
        assert not subscription.closed

        await manager.event_log.append("messages:r1", "m2", message(2).to_record())
        push = await next_push(subscription)
        assert isinstance(push, Snapshot)
        assert [m.id for m in push.items] == ["m1", "m2"]
    finally:
        await manager.close()


async def test_messages_order_by_timestamp_then_sequence(manager):
    later = message(1, timestamp=T0 + timedelta(seconds=5)).model_copy(update={"sequence": 1})
    tie_a = message(2).model_copy(update={"sequence": 2})
    tie_b = message(3).model_copy(update={"sequence": 3})
    for m in (later, tie_b, tie_a):
        await manager.event_log.append("messages:r1", m.id, m.to_record())

    snapshot = await manager.snapshot(MessagesInRoom("r1"))
    assert [m.id for m in snapshot.items] == ["m2", "m3", "m1"]


def room(room_id, created, last=None):
    return ChatRoom(
        id=room_id,
        participant_ids=["alice", "bob"],
        created_by="alice",
        created_at=T0 + timedelta(minutes=created),
        last_message_time=None if last is None else T0 + timedelta(minutes=last),
    )


def test_order_rooms_puts_idle_rooms_last():
    rooms = [room("idle-new", 5), room("old-activity", 0, last=1), room("idle-old", 2), room("recent", 1, last=9)]
    assert [r.id for r in order_rooms(rooms)] == ["recent", "old-activity", "idle-old", "idle-new"]


async def test_rooms_query_matches_participants(manager):
    await manager.event_log.append("rooms", "r1", room("r1", 0).to_record())
    other = room("r2", 1).model_copy(update={"participant_ids": ["bob", "carol"]})
    await manager.event_log.append("rooms", "r2", other.to_record())

    snapshot = await manager.snapshot(RoomsForUser("alice"))
    assert [r.id for r in snapshot.items] == ["r1"]
    snapshot = await manager.snapshot(RoomsForUser("bob"))
    assert {r.id for r in snapshot.items} == {"r1", "r2"}
