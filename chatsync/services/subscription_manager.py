# chatsync/services/subscription_manager.py

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Union

from chatsync.core.errors import ChatError, Unavailable
from chatsync.models.models import ChatRoom, Message
from chatsync.services.event_log import EventLog
from chatsync.services.store import Store

logger = logging.getLogger(__name__)

ROOMS_COLLECTION = "rooms"


def messages_collection(room_id: str) -> str:
    return f"messages:{room_id}"


def room_participants(record: Dict[str, Any]) -> List[str]:
    # older room records used "participants"
    return record.get("participant_ids") or record.get("participants") or []


# ============================================================================
# LIVE QUERIES
# ============================================================================

class LiveQuery(ABC):
    """
    A query whose ordered result is re-pushed whenever the log collection it
    depends on gets a new entry.

    Attributes:
        key: Identity of the query; subscribers with equal keys share one pump
        collection: Event log collection that invalidates the result
    """

    key: str
    collection: str

    @abstractmethod
    async def evaluate(self, store: Store) -> List[Any]:
        ...


def order_rooms(rooms: List[ChatRoom]) -> List[ChatRoom]:
    """Newest activity first; rooms without messages last, oldest first."""
    active = [r for r in rooms if r.last_message_time is not None]
    idle = [r for r in rooms if r.last_message_time is None]
    active.sort(key=lambda r: r.last_message_time, reverse=True)
    idle.sort(key=lambda r: r.created_at)
    return active + idle


def order_messages(messages: List[Message]) -> List[Message]:
    return sorted(messages, key=lambda m: (m.timestamp, m.sequence))


class RoomsForUser(LiveQuery):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self.key = f"rooms:{user_id}"
        self.collection = ROOMS_COLLECTION

    async def evaluate(self, store: Store) -> List[ChatRoom]:
        rows = await store.query(
            ROOMS_COLLECTION, predicate=lambda r: self.user_id in room_participants(r)
        )
        return order_rooms([ChatRoom.from_record(r) for r in rows])


class MessagesInRoom(LiveQuery):
    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.key = f"messages:{room_id}"
        self.collection = messages_collection(room_id)

    async def evaluate(self, store: Store) -> List[Message]:
        rows = await store.query(self.collection)
        return order_messages([Message.from_record(r) for r in rows])


# ============================================================================
# PUSHES
# ============================================================================

@dataclass(frozen=True)
class Snapshot:
    """Full ordered result of a live query as of log position ``sequence``."""

    items: List[Any]
    sequence: int


@dataclass(frozen=True)
class SnapshotError:
    """Recomputation failed; the subscription stays active."""

    error: ChatError
    sequence: int


Push = Union[Snapshot, SnapshotError]


class Subscription:
    """
    One subscriber's view of a live query.

    Iterate it (``async for push in subscription``) to receive pushes. The
    mailbox keeps only the newest ``buffer_size`` pushes: a slow consumer
    loses intermediate snapshots, never the latest one. Iteration ends after
    ``close()``.
    """

    def __init__(
        self,
        manager: "SubscriptionManager",
        query: LiveQuery,
        sink: Optional[Callable[[Push], None]] = None,
        buffer_size: int = 1,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.query = query
        self.manager = manager
        self.closed = False
        self.delivered = 0
        self.dropped = 0
        self._sink = sink
        self._mailbox: Deque[Push] = deque(maxlen=buffer_size)
        self._ready = asyncio.Event()

    def push(self, item: Push) -> bool:
        """Deliver ``item``; returns False (and discards it) once closed."""
        if self.closed:
            return False
        if len(self._mailbox) == self._mailbox.maxlen:
            self.dropped += 1
        self._mailbox.append(item)
        self.delivered += 1
        self._ready.set()
        if self._sink is not None:
            try:
                self._sink(item)
            except Exception as e:
                logger.error("Sink error on subscription %s: %s", self.id, e)
        return True

    def close(self) -> None:
        """Stop receiving pushes. Safe to call more than once."""
        self.manager.unsubscribe(self)

    def _shutdown(self) -> None:
        self.closed = True
        self._mailbox.clear()
        self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Push:
        while True:
            if self.closed:
                raise StopAsyncIteration
            if self._mailbox:
                return self._mailbox.popleft()
            self._ready.clear()
            await self._ready.wait()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


@dataclass
class _QueryGroup:
    query: LiveQuery
    subscribers: Set[Subscription] = field(default_factory=set)
    task: Optional[asyncio.Task] = None
    cursor: int = 0
    latest: Optional[Snapshot] = None


# ============================================================================
# SUBSCRIPTION MANAGER
# ============================================================================

class SubscriptionManager:
    """
    Maps live queries to their subscribers and keeps them up to date.

    Data Structures:
        groups: Maps query key -> _QueryGroup (query, subscribers, pump task)
                Example: {"rooms:alice": <group with 2 subscribers>}

        subscriptions: Maps subscription id -> Subscription

    Each group has one pump task. It evaluates the query, pushes the
    snapshot, then follows the event log from that position and re-evaluates
    whenever a newer entry appears. Entries already covered by the last
    evaluation are skipped, so bursts collapse into a single recomputation.

    Evaluation happens inside ``EventLog.read_view()``; store errors are
    pushed in-band as SnapshotError and the pump keeps following the log.
    """

    def __init__(self, event_log: EventLog, buffer_size: int = 1) -> None:
        self.event_log = event_log
        self.buffer_size = buffer_size
        self.groups: Dict[str, _QueryGroup] = {}
        self.subscriptions: Dict[str, Subscription] = {}

    def subscribe(
        self, query: LiveQuery, sink: Optional[Callable[[Push], None]] = None
    ) -> Subscription:
        """
        Register a subscriber for ``query``.

        The first push is the current snapshot: immediately if the query is
        already live, otherwise as soon as the new pump has evaluated it.
        Must be called from a running event loop.
        """
        subscription = Subscription(self, query, sink=sink, buffer_size=self.buffer_size)
        self.subscriptions[subscription.id] = subscription

        group = self.groups.get(query.key)
        if group is None:
            group = _QueryGroup(query=query)
            group.subscribers.add(subscription)
            self.groups[query.key] = group
            group.task = asyncio.create_task(self._pump(group))
            logger.info("→ Live query '%s' started", query.key)
        else:
            group.subscribers.add(subscription)
            if group.latest is not None:
                subscription.push(group.latest)

        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """
        Remove a subscriber. Idempotent; no push reaches it afterwards.

        When the last subscriber of a query leaves, its pump is cancelled.
        """
        if subscription.closed:
            return
        subscription._shutdown()
        self.subscriptions.pop(subscription.id, None)

        group = self.groups.get(subscription.query.key)
        if group is None:
            return
        group.subscribers.discard(subscription)
        if not group.subscribers:
            del self.groups[subscription.query.key]
            if group.task is not None:
                group.task.cancel()
            logger.info("✗ Live query '%s' stopped", subscription.query.key)

    async def snapshot(self, query: LiveQuery) -> Snapshot:
        """One-shot evaluation; raises ChatError on failure."""
        async with self.event_log.read_view() as store:
            sequence = self.event_log.head(query.collection)
            items = await query.evaluate(store)
        return Snapshot(items=items, sequence=sequence)

    async def _refresh(self, group: _QueryGroup) -> None:
        query = group.query
        try:
            result: Push = await self.snapshot(query)
            group.latest = result
        except ChatError as e:
            logger.warning("Recompute of '%s' failed: %s", query.key, e.message)
            result = SnapshotError(error=e, sequence=self.event_log.head(query.collection))
        except Exception:
            logger.exception("Recompute of '%s' crashed", query.key)
            result = SnapshotError(
                error=Unavailable("snapshot failed"),
                sequence=self.event_log.head(query.collection),
            )

        group.cursor = max(group.cursor, result.sequence)
        for subscription in list(group.subscribers):
            subscription.push(result)

    async def _pump(self, group: _QueryGroup) -> None:
        query = group.query
        await self._refresh(group)
        while True:
            try:
                async with aclosing(
                    self.event_log.subscribe(query.collection, group.cursor)
                ) as entries:
                    async for entry in entries:
                        if entry.sequence > group.cursor:
                            await self._refresh(group)
            except ChatError as e:
                # reading the log itself failed; report and resume from the cursor
                logger.warning("Log read for '%s' failed: %s", query.key, e.message)
                for subscription in list(group.subscribers):
                    subscription.push(SnapshotError(error=e, sequence=group.cursor))
                await asyncio.sleep(0.5)

    @property
    def subscription_count(self) -> int:
        return len(self.subscriptions)

    def push_stats(self) -> Dict[str, int]:
        """Pushes delivered to and dropped from the mailboxes of active subscriptions."""
        active = list(self.subscriptions.values())
        return {
            "delivered": sum(s.delivered for s in active),
            "dropped": sum(s.dropped for s in active),
        }

    async def close(self) -> None:
        """Cancel every pump (application shutdown)."""
        tasks = [g.task for g in self.groups.values() if g.task is not None]
        for subscription in list(self.subscriptions.values()):
            self.unsubscribe(subscription)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
