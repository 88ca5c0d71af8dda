import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from chatsync.services.chat_service import ChatService
from chatsync.services.directory import StoreUserDirectory
from chatsync.services.event_log import EventLog
from chatsync.services.store import GuardedStore, MemoryStore, Store
from chatsync.services.subscription_manager import SubscriptionManager


class FakeClock:
    """Deterministic clock: every call advances by ``step``."""

    def __init__(self, step: timedelta = timedelta(seconds=1)):
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current


@dataclass
class Core:
    store: Store
    event_log: EventLog
    subscriptions: SubscriptionManager
    service: ChatService
    clock: FakeClock


async def build_core(store: Store, clock: FakeClock, assistant=None, timeout: float = 1.0) -> Core:
    guarded = GuardedStore(store, timeout=timeout)
    event_log = EventLog(guarded)
    await event_log.recover()
    subscriptions = SubscriptionManager(event_log)
    service = ChatService(
        store=guarded,
        event_log=event_log,
        subscriptions=subscriptions,
        directory=StoreUserDirectory(guarded),
        assistant=assistant,
        clock=clock,
    )
    return Core(guarded, event_log, subscriptions, service, clock)


async def next_push(subscription, timeout: float = 1.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


async def settle():
    """Let background pumps run until they are idle again."""
    for _ in range(50):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
async def core(memory_store, clock):
    core = await build_core(memory_store, clock)
    yield core
    await core.subscriptions.close()


@pytest.fixture
async def users(core):
    """alice, bob and carol registered."""
    for user_id, name in [("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")]:
        (await core.service.register_user(user_id, name, f"{user_id}@example.com")).unwrap()
    return core
