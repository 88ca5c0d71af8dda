import asyncio
from datetime import timedelta

from chatsync.core.errors import Unavailable
from chatsync.models.models import UNKNOWN_USER, MessageType
from chatsync.services.chat_service import CLAIMS_COLLECTION, PRIVATE_ROOM_NOTICE, ChatService
from chatsync.services.directory import StoreUserDirectory
from chatsync.services.event_log import EventLog
from chatsync.services.store import GuardedStore, MemoryStore
from chatsync.services.subscription_manager import Snapshot, SubscriptionManager
from tests.conftest import FakeClock, build_core, next_push, settle


async def private_room(core, a="alice", b="bob"):
    return (await core.service.create_room(a, [b])).unwrap()


# ---------------------------------------------------------------- messages


async def test_sent_message_is_last_and_updates_room(users):
    room = await private_room(users)
    await users.service.send_message("alice", room.id, "first")
    sent = (await users.service.send_message("bob", room.id, "  hello  ")).unwrap()

    assert sent.content == "hello"
    assert sent.sender_name == "Bob"
    assert sent.sequence == 2

    messages = (await users.service.message_snapshot(room.id)).unwrap()
    assert [m.content for m in messages] == ["first", "hello"]
    assert messages[-1].id == sent.id

    room = (await users.service.get_room(room.id)).unwrap()
    assert room.last_message_summary == "hello"
    assert room.last_message_sender_id == "bob"
    assert room.last_message_sender_name == "Bob"
    assert room.last_message_time == sent.timestamp


async def test_image_message_summary(users):
    room = await private_room(users)
    sent = await users.service.send_message(
        "alice", room.id, "", type=MessageType.IMAGE, image_url="https://cdn.example.com/cat.png"
    )
    assert sent.ok
    assert sent.value.image_url == "https://cdn.example.com/cat.png"
    assert (await users.service.get_room(room.id)).value.last_message_summary == "image"


async def test_send_message_rejections(users):
    room = await private_room(users)

    result = await users.service.send_message("alice", room.id, "   ")
    assert result.error.code == "invalid_argument"

    result = await users.service.send_message("alice", room.id, "pic", type=MessageType.IMAGE)
    assert result.error.code == "invalid_argument"

    result = await users.service.send_message("alice", room.id, "hi", type="VIDEO")
    assert result.error.code == "invalid_argument"

    result = await users.service.send_message("alice", "missing", "hi")
    assert result.error.code == "not_found"

    result = await users.service.send_message(None, room.id, "hi")
    assert result.error.code == "unauthorized"

    result = await users.service.send_message("alice", room.id, 123)
    assert result.error.code == "invalid_argument"

    assert (await users.service.message_snapshot(room.id)).value == []


async def test_equal_timestamps_keep_send_order(memory_store):
    core = await build_core(memory_store, FakeClock(step=timedelta(0)))
    try:
        room = await private_room(core)
        for text in ["one", "two", "three"]:
            (await core.service.send_message("alice", room.id, text)).unwrap()

        messages = (await core.service.message_snapshot(room.id)).unwrap()
        assert len({m.timestamp for m in messages}) == 1
        assert [m.content for m in messages] == ["one", "two", "three"]
    finally:
        await core.subscriptions.close()


async def test_concurrent_sends_are_all_kept(users):
    room = await private_room(users)

    results = await asyncio.gather(
        *(users.service.send_message("alice" if i % 2 else "bob", room.id, f"msg {i}") for i in range(10))
    )
    assert all(r.ok for r in results)

    messages = (await users.service.message_snapshot(room.id)).unwrap()
    assert len(messages) == 10
    assert sorted(m.sequence for m in messages) == list(range(1, 11))

    newest = max(messages, key=lambda m: m.sequence)
    room = (await users.service.get_room(room.id)).unwrap()
    assert room.last_message_summary == newest.content
    assert room.last_message_time == newest.timestamp


class GatedStore(MemoryStore):
    """Room updates wait until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.gate.set()

    async def update(self, collection, record_id, fields):
        await self.gate.wait()
        return await super().update(collection, record_id, fields)


async def test_readers_never_see_half_a_send(clock):
    store = GatedStore()
    core = await build_core(store, clock)
    try:
        room = await private_room(core)
        store.gate.clear()

        send = asyncio.ensure_future(core.service.send_message("alice", room.id, "hi"))
        await settle()
        # the message record is written, the room update is pending
        assert not send.done()

        messages = asyncio.ensure_future(core.service.message_snapshot(room.id))
        rooms = asyncio.ensure_future(core.service.room_snapshot("alice"))
        await settle()
        assert not messages.done()
        assert not rooms.done()

        store.gate.set()
        assert (await send).ok
        assert [m.content for m in (await messages).unwrap()] == ["hi"]
        assert (await rooms).unwrap()[0].last_message_summary == "hi"
    finally:
        await core.subscriptions.close()


class RoomUpdateFailsOnce(MemoryStore):
    """The next room update raises a backend error after ``fail()``."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def fail(self):
        self.failing = True

    async def update(self, collection, record_id, fields):
        if self.failing and collection == "rooms":
            self.failing = False
            raise ConnectionError("connection reset by peer")
        return await super().update(collection, record_id, fields)


async def test_failed_send_leaves_no_trace(clock):
    store = RoomUpdateFailsOnce()
    core = await build_core(store, clock)
    try:
        room = await private_room(core)
        subscription = (await core.service.list_messages(room.id)).unwrap()
        await next_push(subscription)

        store.fail()
        result = await core.service.send_message("alice", room.id, "lost")
        assert result.error.code == "unavailable"

        assert (await core.service.message_snapshot(room.id)).value == []
        unchanged = (await core.service.get_room(room.id)).unwrap()
        assert unchanged.last_message_summary == PRIVATE_ROOM_NOTICE
        assert unchanged.last_message_time is None
        assert core.event_log.head(f"messages:{room.id}") == 0

        sent = (await core.service.send_message("alice", room.id, "kept")).unwrap()
        assert sent.sequence == 1
        messages = (await core.service.message_snapshot(room.id)).unwrap()
        assert [(m.content, m.sequence) for m in messages] == [("kept", 1)]
        assert (await core.service.get_room(room.id)).unwrap().last_message_summary == "kept"

        # subscribers only ever saw the committed message
        push = await next_push(subscription)
        assert [m.content for m in push.items] == ["kept"]
        subscription.close()
    finally:
        await core.subscriptions.close()


# ------------------------------------------------------------------- rooms


async def test_private_room_is_reused_for_same_pair(users):
    first = await private_room(users, "alice", "bob")
    again = await private_room(users, "alice", "bob")
    reversed_ = await private_room(users, "bob", "alice")

    assert again.id == first.id
    assert reversed_.id == first.id
    assert first.participant_ids == ["alice", "bob"]
    assert first.last_message_summary == PRIVATE_ROOM_NOTICE
    assert len((await users.service.room_snapshot("alice")).unwrap()) == 1


async def test_concurrent_private_creates_return_one_room(users):
    results = await asyncio.gather(
        users.service.create_room("alice", ["bob"]),
        users.service.create_room("bob", ["alice"]),
        users.service.create_room("alice", ["bob", "alice"]),
    )
    assert len({r.unwrap().id for r in results}) == 1


async def test_private_room_names_and_unknown_users(users):
    room = await private_room(users, "alice", "zed")
    assert room.participant_names == {"alice": "Alice", "zed": UNKNOWN_USER}
    assert room.display_name_for("alice") == UNKNOWN_USER
    assert room.display_name_for("zed") == "Alice"


async def test_group_room(users):
    result = await users.service.create_room("alice", ["bob", "carol"], name=" Team ", is_group=True)
    room = result.unwrap()

    assert room.is_group
    assert room.name == "Team"
    assert room.participant_ids == ["alice", "bob", "carol"]
    assert room.last_message_summary == "Alice created the room"
    assert room.display_name_for("bob") == "Team"

    # group rooms are never deduplicated
    other = (await users.service.create_room("alice", ["bob", "carol"], name="Team", is_group=True)).unwrap()
    assert other.id != room.id


async def test_create_room_rejections(users):
    result = await users.service.create_room("alice", ["bob"], is_group=True)
    assert result.error.code == "invalid_argument"

    result = await users.service.create_room("alice", [], name="Solo", is_group=True)
    assert result.error.code == "invalid_argument"

    result = await users.service.create_room("alice", ["bob", "carol"])
    assert result.error.code == "invalid_argument"

    result = await users.service.create_room("alice", ["alice"])
    assert result.error.code == "invalid_argument"

    result = await users.service.create_room(None, ["bob"])
    assert result.error.code == "unauthorized"

    result = await users.service.create_room("alice", "bob")
    assert result.error.code == "invalid_argument"


async def test_fresh_claim_without_room_is_a_conflict(users):
    await users.store.put(
        CLAIMS_COLLECTION, "alice|bob", {"room_id": "ghost", "claimed_at": users.clock.now.isoformat()}
    )
    result = await users.service.create_room("alice", ["bob"])
    assert result.error.code == "conflict"


async def test_stale_claim_is_taken_over(users):
    stale = users.clock.now - timedelta(minutes=5)
    await users.store.put(CLAIMS_COLLECTION, "alice|bob", {"room_id": "ghost", "claimed_at": stale.isoformat()})

    room = (await users.service.create_room("alice", ["bob"])).unwrap()

    assert (await users.store.get(CLAIMS_COLLECTION, "alice|bob"))["room_id"] == room.id
    assert (await users.service.create_room("bob", ["alice"])).unwrap().id == room.id


async def test_room_list_order(users):
    with_bob = await private_room(users, "alice", "bob")
    with_carol = await private_room(users, "alice", "carol")
    team = (await users.service.create_room("alice", ["bob"], name="Team", is_group=True)).unwrap()
    bob_carol = await private_room(users, "bob", "carol")

    await users.service.send_message("alice", with_bob.id, "older")
    await users.service.send_message("carol", with_carol.id, "newer")

    rooms = (await users.service.room_snapshot("alice")).unwrap()
    assert [r.id for r in rooms] == [with_carol.id, with_bob.id, team.id]
    assert bob_carol.id not in [r.id for r in rooms]


async def test_get_room_missing(users):
    assert (await users.service.get_room("missing")).error.code == "not_found"


# -------------------------------------------------------------- live queries


async def test_list_rooms_pushes_on_new_message(users):
    room = await private_room(users)
    subscription = (await users.service.list_rooms("bob")).unwrap()
    try:
        push = await next_push(subscription)
        assert isinstance(push, Snapshot)
        assert [r.last_message_summary for r in push.items] == [PRIVATE_ROOM_NOTICE]

        await users.service.send_message("alice", room.id, "ping")
        push = await next_push(subscription)
        assert [r.last_message_summary for r in push.items] == ["ping"]
    finally:
        subscription.close()


async def test_list_messages_pushes_message_with_room_summary(users):
    room = await private_room(users)
    pushes = []
    subscription = (await users.service.list_messages(room.id, sink=pushes.append)).unwrap()
    try:
        await next_push(subscription)
        sent = (await users.service.send_message("alice", room.id, "hey")).unwrap()
        push = await next_push(subscription)
        assert [m.id for m in push.items] == [sent.id]
        assert len(pushes) == 2
    finally:
        subscription.close()


async def test_list_queries_reject_bad_input(users):
    assert (await users.service.list_messages("missing")).error.code == "not_found"
    assert (await users.service.message_snapshot("missing")).error.code == "not_found"
    assert (await users.service.list_rooms(None)).error.code == "unauthorized"
    assert (await users.service.room_snapshot("")).error.code == "unauthorized"


# ------------------------------------------------------------------- users


async def test_search_users_by_prefix(users):
    for user_id, name in [("andy", "Andy"), ("anna", "Anna"), ("andrew", "andrew"), ("bo", "Bo")]:
        await users.service.register_user(user_id, name)

    found = (await users.service.search_users("An", "bob")).unwrap()
    assert [u.display_name for u in found] == ["Andy", "Anna"]

    found = (await users.service.search_users("An", "andy")).unwrap()
    assert [u.id for u in found] == ["anna"]

    assert (await users.service.search_users("   ", "bob")).value == []
    assert (await users.service.search_users("An", None)).error.code == "unauthorized"


async def test_search_users_limit(memory_store, clock):
    guarded = GuardedStore(memory_store, timeout=1)
    log = EventLog(guarded)
    subscriptions = SubscriptionManager(log)
    service = ChatService(guarded, log, subscriptions, StoreUserDirectory(guarded), clock=clock, search_limit=2)
    for i in range(5):
        await service.register_user(f"u{i}", f"Sam {i}")

    found = (await service.search_users("Sam", "someone")).unwrap()
    assert [u.display_name for u in found] == ["Sam 0", "Sam 1"]


async def test_register_and_get_user(users):
    alice = (await users.service.get_user("alice")).unwrap()
    assert alice.display_name == "Alice"
    assert alice.email == "alice@example.com"

    assert (await users.service.register_user("alice", "Other")).error.code == "conflict"
    assert (await users.service.register_user("dave", "  ")).error.code == "invalid_argument"
    assert (await users.service.register_user(None, "Dave")).error.code == "unauthorized"
    assert (await users.service.get_user("nobody")).error.code == "not_found"


# --------------------------------------------------------------- assistant


class FakeAssistant:
    def __init__(self, reply="Sure.", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, prompt, recent_context):
        self.calls.append((prompt, list(recent_context)))
        if self.error is not None:
            raise self.error
        return self.reply


async def test_ask_assistant_sends_recent_context(memory_store, clock):
    assistant = FakeAssistant()
    core = await build_core(memory_store, clock, assistant=assistant)
    try:
        room = await private_room(core)
        for i in range(5):
            await core.service.send_message("alice", room.id, f"line {i}")

        reply = await core.service.ask_assistant("alice", room.id, " summarize this ")

        assert reply.value == "Sure."
        prompt, context = assistant.calls[0]
        assert prompt == "summarize this"
        assert [m.content for m in context] == ["line 2", "line 3", "line 4"]
    finally:
        await core.subscriptions.close()


async def test_ask_assistant_failures(memory_store, clock):
    core = await build_core(memory_store, clock, assistant=FakeAssistant(error=Unavailable("quota exceeded")))
    try:
        room = await private_room(core)
        result = await core.service.ask_assistant("alice", room.id, "hi")
        assert result.error.code == "unavailable"
        assert result.error.message == "quota exceeded"

        assert (await core.service.ask_assistant("alice", room.id, "")).error.code == "invalid_argument"
        assert (await core.service.ask_assistant(None, room.id, "hi")).error.code == "unauthorized"
    finally:
        await core.subscriptions.close()


async def test_ask_assistant_not_configured(users):
    room = await private_room(users)
    result = await users.service.ask_assistant("alice", room.id, "hi")
    assert result.error.code == "unavailable"


# ------------------------------------------------------------------ errors


class BrokenDirectory:
    async def lookup_display_name(self, user_id):
        raise RuntimeError("directory exploded")


async def test_unexpected_errors_become_unavailable(memory_store, clock):
    log = EventLog(memory_store)
    service = ChatService(memory_store, log, SubscriptionManager(log), BrokenDirectory(), clock=clock)

    result = await service.create_room("alice", ["bob"])

    assert result.error.code == "unavailable"
    assert result.error.message == "internal error"


async def test_store_outage_is_unavailable(clock):
    class DownStore(MemoryStore):
        async def get(self, collection, record_id):
            raise ConnectionError("10.0.0.7:6379 refused")

    core = await build_core(DownStore(), clock)
    result = await core.service.send_message("alice", "r1", "hi")
    assert result.error.code == "unavailable"
    assert "6379" not in result.error.message
