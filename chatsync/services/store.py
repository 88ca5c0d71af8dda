# chatsync/services/store.py

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from chatsync.core.errors import ChatError, Conflict, NotFound, Unavailable

logger = logging.getLogger(__name__)

Predicate = Callable[[Dict[str, Any]], bool]
OrderKey = Callable[[Dict[str, Any]], Any]


# ============================================================================
# STORE CONTRACT
# ============================================================================

class Store(ABC):
    """
    Pluggable ordered key-value persistence.

    Records are JSON-compatible dicts grouped in named collections
    ("users", "rooms", "messages:<room_id>", ...). Every operation is atomic
    for a single key; writes that span keys are grouped by the EventLog.
    """

    @abstractmethod
    async def put(self, collection: str, record_id: str, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def create(self, collection: str, record_id: str, record: Dict[str, Any]) -> None:
        """Insert a record, raising Conflict if the key already exists."""

    @abstractmethod
    async def update(
        self, collection: str, record_id: str, partial: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Merge ``partial`` into an existing record and return the result."""

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> None:
        """Remove a record; deleting a missing key is a no-op."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        predicate: Optional[Predicate] = None,
        order: Optional[OrderKey] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def close(self) -> None:
        return None


def select(
    records: List[Dict[str, Any]],
    predicate: Optional[Predicate],
    order: Optional[OrderKey],
    descending: bool,
    limit: Optional[int],
) -> List[Dict[str, Any]]:
    """Filter, sort and cap a scanned collection (shared by scan-based stores)."""
    rows = [r for r in records if predicate is None or predicate(r)]
    if order is not None:
        rows.sort(key=order, reverse=descending)
    if limit is not None:
        rows = rows[:limit]
    return rows


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class MemoryStore(Store):
    """
    Process-local store backed by nested dicts.

    Records are deep-copied on the way in and out so callers can never
    mutate stored state. Insertion order is kept, which makes ``query``
    stable for records that compare equal under ``order``.
    """

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection, {})

    async def put(self, collection, record_id, record):
        self._collection(collection)[record_id] = copy.deepcopy(record)

    async def get(self, collection, record_id):
        record = self.collections.get(collection, {}).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def create(self, collection, record_id, record):
        rows = self._collection(collection)
        if record_id in rows:
            raise Conflict(f"{collection}/{record_id} already exists")
        rows[record_id] = copy.deepcopy(record)

    async def update(self, collection, record_id, partial):
        rows = self.collections.get(collection, {})
        if record_id not in rows:
            raise NotFound(f"{collection}/{record_id} not found")
        rows[record_id].update(copy.deepcopy(partial))
        return copy.deepcopy(rows[record_id])

    async def delete(self, collection, record_id):
        self.collections.get(collection, {}).pop(record_id, None)

    async def query(self, collection, predicate=None, order=None, descending=False, limit=None):
        records = [copy.deepcopy(r) for r in self.collections.get(collection, {}).values()]
        return select(records, predicate, order, descending, limit)


# ============================================================================
# TIMEOUT GUARD
# ============================================================================

class GuardedStore(Store):
    """
    Wraps any Store so that no call blocks indefinitely.

    - Calls exceeding ``timeout`` seconds fail with Unavailable
    - Backend exceptions (connection errors, driver errors) become Unavailable;
      the underlying error is logged, never returned to the caller
    - ChatErrors raised by the backend (NotFound, Conflict) pass through
    """

    def __init__(self, store: Store, timeout: float = 5.0) -> None:
        self.store = store
        self.timeout = timeout

    async def _guard(self, op: str, collection: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except ChatError:
            raise
        except asyncio.TimeoutError:
            logger.error("Store %s on '%s' timed out after %.2fs", op, collection, self.timeout)
            raise Unavailable("store timed out")
        except Exception as e:
            logger.error("Store %s on '%s' failed: %s", op, collection, e)
            raise Unavailable("store unavailable") from e

    async def put(self, collection, record_id, record):
        return await self._guard("put", collection, self.store.put(collection, record_id, record))

    async def get(self, collection, record_id):
        return await self._guard("get", collection, self.store.get(collection, record_id))

    async def create(self, collection, record_id, record):
        return await self._guard(
            "create", collection, self.store.create(collection, record_id, record)
        )

    async def update(self, collection, record_id, partial):
        return await self._guard(
            "update", collection, self.store.update(collection, record_id, partial)
        )

    async def delete(self, collection, record_id):
        return await self._guard("delete", collection, self.store.delete(collection, record_id))

    async def query(self, collection, predicate=None, order=None, descending=False, limit=None):
        return await self._guard(
            "query",
            collection,
            self.store.query(collection, predicate, order, descending, limit),
        )

    async def close(self) -> None:
        await self.store.close()
