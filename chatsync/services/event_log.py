# chatsync/services/event_log.py

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from chatsync.services.store import Store

logger = logging.getLogger(__name__)

HEADS_COLLECTION = "log_heads"
BATCH_KEY = "_batch"


def log_collection(collection: str) -> str:
    return f"log:{collection}"


def _sequence_key(sequence: int) -> str:
    # zero-padded so keys sort the same way as the numbers
    return f"{sequence:012d}"


# ============================================================================
# LOG RECORDS
# ============================================================================

@dataclass(frozen=True)
class Change:
    """
    One write inside a commit.

    Attributes:
        collection: Store collection, also the log collection it is appended to
        record_id: Key of the record
        record: Full record for "put"/"create", partial fields for "update"
        op: "put", "create" (fails with Conflict if present) or "update"
            (fails with NotFound if absent)
        stamp_sequence: If set, the assigned sequence number is written into
            this field of the record before it is stored
    """

    collection: str
    record_id: str
    record: Dict[str, Any]
    op: str = "put"
    stamp_sequence: Optional[str] = None


@dataclass(frozen=True)
class LogEntry:
    collection: str
    sequence: int
    batch: int
    op: str
    record_id: str
    record: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "LogEntry":
        return cls(**record)


# ============================================================================
# EVENT LOG
# ============================================================================

class EventLog:
    """
    Append-only change log with one monotonically increasing sequence per
    collection ("rooms", "messages:<room_id>", ...).

    Writes go through ``commit``, which applies a batch of changes to the
    Store and appends one entry per change while holding the log lock. The
    in-memory heads only advance once every write of the batch succeeded.
    If any write fails, the writes already applied are undone before the
    error propagates. Readers evaluate under ``read_view`` (the same lock),
    so nobody observes a half-applied batch.

    Entries and heads are kept in the Store itself ("log:<collection>",
    "log_heads"), so a durable Store gives a durable, resumable log.

    Usage:
        log = EventLog(store)
        await log.recover()
        entries = await log.commit([Change("rooms", room.id, room.to_record())])

        async for entry in log.subscribe("rooms", from_sequence=0):
            ...
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition()
        self._heads: Dict[str, int] = {}
        self._batch = 0

    async def recover(self) -> None:
        """Reload sequence heads from the Store (call once on startup)."""
        rows = await self.store.query(HEADS_COLLECTION)
        for row in rows:
            if row["collection"] == BATCH_KEY:
                self._batch = row["sequence"]
            else:
                self._heads[row["collection"]] = row["sequence"]
        if rows:
            logger.info("✓ Recovered event log: %d collections, batch %d", len(self._heads), self._batch)

    def head(self, collection: str) -> int:
        """Sequence number of the newest committed entry (0 if none)."""
        return self._heads.get(collection, 0)

    def heads(self) -> Dict[str, int]:
        return dict(self._heads)

    @property
    def batch(self) -> int:
        return self._batch

    async def commit(self, changes: Sequence[Change]) -> List[LogEntry]:
        """
        Apply ``changes`` to the Store and append them to the log as one batch.

        Args:
            changes: Writes to apply, in order

        Returns:
            The appended entries, in the same order as ``changes``. For
            "update" changes the entry carries the merged record.

        Raises:
            ChatError: From the Store (NotFound, Conflict, Unavailable). Every
            write already applied by the batch is undone before the error is
            re-raised, and heads are left untouched.
        """
        if not changes:
            return []

        async with self._lock:
            batch = self._batch + 1
            heads: Dict[str, int] = {}
            entries: List[LogEntry] = []
            undo: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []

            try:
                for change in changes:
                    sequence = heads.get(change.collection, self.head(change.collection)) + 1
                    heads[change.collection] = sequence

                    record = dict(change.record)
                    if change.stamp_sequence:
                        record[change.stamp_sequence] = sequence

                    if change.op == "create":
                        await self.store.create(change.collection, change.record_id, record)
                        undo.append((change.collection, change.record_id, None))
                    else:
                        await self._remember(undo, change.collection, change.record_id)
                        if change.op == "update":
                            record = await self.store.update(change.collection, change.record_id, record)
                        else:
                            await self.store.put(change.collection, change.record_id, record)

                    entry = LogEntry(
                        collection=change.collection,
                        sequence=sequence,
                        batch=batch,
                        op=change.op,
                        record_id=change.record_id,
                        record=record,
                    )
                    key = _sequence_key(sequence)
                    await self._remember(undo, log_collection(change.collection), key)
                    await self.store.put(log_collection(change.collection), key, entry.to_record())
                    entries.append(entry)

                for collection, sequence in heads.items():
                    await self._remember(undo, HEADS_COLLECTION, collection)
                    await self.store.put(
                        HEADS_COLLECTION, collection, {"collection": collection, "sequence": sequence}
                    )
                await self._remember(undo, HEADS_COLLECTION, BATCH_KEY)
                await self.store.put(
                    HEADS_COLLECTION, BATCH_KEY, {"collection": BATCH_KEY, "sequence": batch}
                )
            except BaseException:
                # also covers cancellation of the committing task
                await self._rollback(batch, undo)
                raise

            self._heads.update(heads)
            self._batch = batch

        logger.debug("Committed batch %d: %s", batch, heads)
        async with self._changed:
            self._changed.notify_all()
        return entries

    async def _remember(self, undo, collection: str, record_id: str) -> None:
        undo.append((collection, record_id, await self.store.get(collection, record_id)))

    async def _rollback(self, batch: int, undo) -> None:
        """Restore every record touched by a failed batch, newest write first."""
        for collection, record_id, previous in reversed(undo):
            try:
                if previous is None:
                    await self.store.delete(collection, record_id)
                else:
                    await self.store.put(collection, record_id, previous)
            except Exception as e:
                logger.error("Rollback of batch %d could not restore %s/%s: %s", batch, collection, record_id, e)
        logger.warning("Rolled back batch %d (%d writes)", batch, len(undo))

    async def append(self, collection: str, record_id: str, record: Dict[str, Any]) -> int:
        """Single-record commit; returns the assigned sequence number."""
        entries = await self.commit([Change(collection, record_id, record)])
        return entries[0].sequence

    async def read(
        self, collection: str, after: int = 0, limit: Optional[int] = None
    ) -> List[LogEntry]:
        """Committed entries with ``after < sequence <= head``, oldest first."""
        head = self.head(collection)
        rows = await self.store.query(
            log_collection(collection),
            predicate=lambda r: after < r["sequence"] <= head,
            order=lambda r: r["sequence"],
            limit=limit,
        )
        return [LogEntry.from_record(r) for r in rows]

    async def subscribe(
        self, collection: str, from_sequence: int = 0
    ) -> AsyncIterator[LogEntry]:
        """
        Infinite stream of entries with sequence > ``from_sequence``.

        Entries are delivered in strictly increasing sequence order, each one
        exactly once per iterator. To rewind, start a new iterator from an
        earlier sequence number.
        """
        cursor = from_sequence
        while True:
            if self.head(collection) <= cursor:
                async with self._changed:
                    await self._changed.wait_for(lambda: self.head(collection) > cursor)
            for entry in await self.read(collection, after=cursor):
                cursor = entry.sequence
                yield entry

    @asynccontextmanager
    async def read_view(self):
        """
        Hold the commit lock while reading, so a multi-record query sees either
        all or none of any batch. Always released on exit.
        """
        async with self._lock:
            yield self.store
