# chatsync/services/redis_store.py
import json
import logging

import redis.asyncio as redis
from redis.exceptions import WatchError

from chatsync.core.errors import Conflict, NotFound
from chatsync.services.store import Store, select

logger = logging.getLogger(__name__)


class RedisStore(Store):
    """
    Store backed by Redis hashes: one hash per collection, one field per record.

        chatsync:rooms            -> {room_id: json, ...}
        chatsync:messages:<room>  -> {message_id: json, ...}

    ``query`` is a scan of the hash followed by in-process filtering and
    ordering; collections here are room lists and message feeds, which stay
    small enough for that.
    """

    def __init__(self, url: str, prefix: str = "chatsync", client=None):
        self.url = url
        self.prefix = prefix
        self.client = client

    async def connect(self):
        """Establish async connection to Redis."""
        if self.client is None:
            self.client = redis.from_url(self.url, decode_responses=True)
        await self.client.ping()
        logger.info("✓ Connected to Redis store (prefix '%s')", self.prefix)

    def _key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}"

    async def put(self, collection, record_id, record):
        await self.client.hset(self._key(collection), record_id, json.dumps(record))

    async def get(self, collection, record_id):
        raw = await self.client.hget(self._key(collection), record_id)
        return json.loads(raw) if raw is not None else None

    async def create(self, collection, record_id, record):
        created = await self.client.hsetnx(self._key(collection), record_id, json.dumps(record))
        if not created:
            raise Conflict(f"{collection}/{record_id} already exists")

    async def update(self, collection, record_id, partial):
        """
        Read-modify-write under WATCH so concurrent writers to the same key
        retry instead of overwriting each other.
        """
        key = self._key(collection)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.hget(key, record_id)
                    if raw is None:
                        await pipe.unwatch()
                        raise NotFound(f"{collection}/{record_id} not found")
                    merged = json.loads(raw)
                    merged.update(partial)
                    pipe.multi()
                    pipe.hset(key, record_id, json.dumps(merged))
                    await pipe.execute()
                    return merged
                except WatchError:
                    logger.debug("Retrying update of %s/%s after concurrent write", collection, record_id)
                    continue

    async def delete(self, collection, record_id):
        await self.client.hdel(self._key(collection), record_id)

    async def query(self, collection, predicate=None, order=None, descending=False, limit=None):
        values = await self.client.hvals(self._key(collection))
        return select([json.loads(v) for v in values], predicate, order, descending, limit)

    async def close(self):
        """Close connections."""
        if self.client:
            await self.client.aclose()
        logger.info("Redis connection closed")
