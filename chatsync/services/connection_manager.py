# chatsync/services/connection_manager.py

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import WebSocket

from chatsync.core.errors import ChatError
from chatsync.services.chat_service import ChatService
from chatsync.services.subscription_manager import Push, Snapshot, Subscription

logger = logging.getLogger(__name__)

Watch = Tuple[Subscription, asyncio.Task]


def push_payload(watch_id: str, push: Push) -> Dict[str, Any]:
    if isinstance(push, Snapshot):
        return {
            "type": "snapshot",
            "watch_id": watch_id,
            "sequence": push.sequence,
            "items": [item.model_dump(mode="json") for item in push.items],
        }
    return {
        "type": "error",
        "watch_id": watch_id,
        "sequence": push.sequence,
        **push.error.to_dict(),
    }


def error_payload(error: ChatError, **extra: Any) -> Dict[str, Any]:
    return {"type": "error", **error.to_dict(), **extra}


# ============================================================================
# WEBSOCKET CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """
    Manages WebSocket connections and the live queries they watch.

    Each watch is a Subscription plus a forwarding task that writes every
    push to the socket. The subscription mailbox absorbs slow sockets: while
    a send is in progress newer snapshots replace older ones.

    Data Structures:
        connection_users: Maps WebSocket -> user_id
        watches: Maps WebSocket -> {watch_id: (Subscription, forwarding task)}
                 Example: {websocket1: {"3f2c...": (<rooms:alice>, <Task>)}}
    """

    def __init__(self, service: ChatService) -> None:
        self.service = service
        self.connection_users: Dict[WebSocket, str] = {}
        self.watches: Dict[WebSocket, Dict[str, Watch]] = {}
        self._send_locks: Dict[WebSocket, asyncio.Lock] = {}

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        """
        Accept a new WebSocket connection for an identified user.

        The connection watches nothing until it sends "watch_rooms" or
        "watch_messages".
        """
        await websocket.accept()
        self.connection_users[websocket] = user_id
        self.watches[websocket] = {}
        self._send_locks[websocket] = asyncio.Lock()
        logger.info("✓ User %s connected. Total: %d", user_id, len(self.connection_users))

    def disconnect(self, websocket: WebSocket) -> None:
        """
        Forget a connection: close its subscriptions and stop forwarding.
        Safe to call more than once.
        """
        if websocket not in self.connection_users:
            return
        user_id = self.connection_users.pop(websocket)
        current = asyncio.current_task()
        for subscription, task in self.watches.pop(websocket, {}).values():
            subscription.close()
            if task is not current:
                task.cancel()
        self._send_locks.pop(websocket, None)
        logger.info("✗ User %s disconnected. Total: %d", user_id, len(self.connection_users))

    async def send(self, websocket: WebSocket, payload: Dict[str, Any]) -> bool:
        """Serialized send; returns False if the socket is gone."""
        lock = self._send_locks.get(websocket)
        if lock is None:
            return False
        try:
            async with lock:
                await websocket.send_json(payload)
            return True
        except Exception as e:
            logger.error(f"Send error: {e}")
            self.disconnect(websocket)
            return False

    async def watch_rooms(self, websocket: WebSocket) -> Optional[str]:
        user_id = self.connection_users.get(websocket)
        result = await self.service.list_rooms(user_id)
        return await self._start_watch(websocket, result, "watch_rooms")

    async def watch_messages(self, websocket: WebSocket, room_id: str) -> Optional[str]:
        result = await self.service.list_messages(room_id)
        return await self._start_watch(websocket, result, "watch_messages", room_id=room_id)

    async def _start_watch(self, websocket, result, action: str, **extra) -> Optional[str]:
        if websocket not in self.watches:
            if result.ok:
                result.value.close()
            return None  # Connection already closed
        if not result.ok:
            await self.send(websocket, error_payload(result.error, action=action, **extra))
            return None

        subscription = result.value
        watch_id = subscription.id
        task = asyncio.create_task(self._forward(websocket, watch_id, subscription))
        self.watches[websocket][watch_id] = (subscription, task)
        await self.send(websocket, {"type": "watching", "watch_id": watch_id, "query": subscription.query.key})
        return watch_id

    async def unwatch(self, websocket: WebSocket, watch_id: str) -> None:
        watch = self.watches.get(websocket, {}).pop(watch_id, None)
        if watch is None:
            return
        subscription, task = watch
        subscription.close()
        task.cancel()
        await self.send(websocket, {"type": "unwatched", "watch_id": watch_id})

    async def _forward(self, websocket: WebSocket, watch_id: str, subscription: Subscription) -> None:
        async for push in subscription:
            if not await self.send(websocket, push_payload(watch_id, push)):
                return

    @property
    def watch_count(self) -> int:
        return sum(len(w) for w in self.watches.values())

    async def close_all(self) -> None:
        tasks = [task for watches in self.watches.values() for _, task in watches.values()]
        for websocket in list(self.connection_users):
            self.disconnect(websocket)
        await asyncio.gather(*tasks, return_exceptions=True)
