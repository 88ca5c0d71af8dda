# chatsync/services/chat_service.py

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional

from chatsync.core.errors import (
    ChatError,
    Conflict,
    InvalidArgument,
    NotFound,
    Result,
    Unauthorized,
    Unavailable,
)
from chatsync.models.models import ChatRoom, Message, MessageType, User, utcnow
from chatsync.services.assistant import CONTEXT_MESSAGES, CompletionClient
from chatsync.services.directory import USERS_COLLECTION, UserDirectory
from chatsync.services.event_log import Change, EventLog
from chatsync.services.store import Store
from chatsync.services.subscription_manager import (
    ROOMS_COLLECTION,
    MessagesInRoom,
    Push,
    RoomsForUser,
    Subscription,
    SubscriptionManager,
    messages_collection,
    room_participants,
)

logger = logging.getLogger(__name__)

CLAIMS_COLLECTION = "room_claims"
CLAIM_TTL = timedelta(seconds=30)
SEARCH_SENTINEL = "\uf8ff"
PRIVATE_ROOM_NOTICE = "New chat started"


def _claim_key(participants: Iterable[str]) -> str:
    return "|".join(sorted(participants))


# ============================================================================
# CHAT SYNCHRONIZATION SERVICE
# ============================================================================

class ChatService:
    """
    Public API of the chat core: rooms, messages, users and live queries.

    Every write is a single EventLog commit, so the store and the log change
    together and subscribers only ever see complete batches. Operations
    return a Result and never raise ChatError; failures are logged with the
    operation name and ids.

    Collaborators (all injected):
        store: GuardedStore (timeouts become Unavailable)
        event_log: EventLog over the same store
        subscriptions: SubscriptionManager over the same log
        directory: UserDirectory for participant and sender names
        assistant: Optional CompletionClient for ``ask_assistant``

    Usage:
        service = ChatService(store, log, subscriptions, directory)
        room = (await service.create_room("alice", ["bob"])).unwrap()
        await service.send_message("alice", room.id, "hi")
    """

    def __init__(
        self,
        store: Store,
        event_log: EventLog,
        subscriptions: SubscriptionManager,
        directory: UserDirectory,
        assistant: Optional[CompletionClient] = None,
        clock: Callable[[], datetime] = utcnow,
        search_limit: int = 20,
    ) -> None:
        self.store = store
        self.event_log = event_log
        self.subscriptions = subscriptions
        self.directory = directory
        self.assistant = assistant
        self.clock = clock
        self.search_limit = search_limit
        # Locks live only while some operation holds a reference to them
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _run(self, op: str, awaitable: Awaitable, **context) -> Result:
        try:
            return Result.success(await awaitable)
        except ChatError as e:
            logger.warning("%s failed %s: %s", op, context, e.message)
            return Result.failure(e)
        except Exception:
            logger.exception("%s crashed %s", op, context)
            return Result.failure(Unavailable("internal error"))

    # ------------------------------------------------------------------ users

    async def register_user(self, user_id: Optional[str], display_name: str, email: str = "") -> Result[User]:
        """
        Create the profile for ``user_id``. Profiles are immutable, so a
        second registration fails with Conflict.
        """
        return await self._run(
            "register_user", self._register_user(user_id, display_name, email), user_id=user_id
        )

    async def _register_user(self, user_id, display_name, email) -> User:
        if not user_id:
            raise Unauthorized("Sign-in required")
        if not display_name or not display_name.strip():
            raise InvalidArgument("Display name is required")
        user = User(id=user_id, display_name=display_name.strip(), email=email, created_at=self.clock())
        await self.event_log.commit([Change(USERS_COLLECTION, user.id, user.to_record(), op="create")])
        logger.info("✓ Registered user %s", user.id)
        return user

    async def get_user(self, user_id: str) -> Result[User]:
        return await self._run("get_user", self._get_user(user_id), user_id=user_id)

    async def _get_user(self, user_id) -> User:
        record = await self.store.get(USERS_COLLECTION, user_id)
        if record is None:
            raise NotFound("User not found")
        return User.from_record(record)

    async def search_users(self, query: str, excluding_user_id: Optional[str]) -> Result[List[User]]:
        """
        Prefix search on display name.

        Args:
            query: Case-sensitive prefix; matches names in [query, query + U+F8FF)
            excluding_user_id: The caller, never part of the result

        Returns:
            Up to ``search_limit`` users ordered by display name; empty for a
            blank query
        """
        return await self._run(
            "search_users", self._search_users(query, excluding_user_id), query=query
        )

    async def _search_users(self, query, excluding_user_id) -> List[User]:
        if not excluding_user_id:
            raise Unauthorized("Sign-in required")
        if not query or not query.strip():
            return []
        upper = query + SEARCH_SENTINEL
        rows = await self.store.query(
            USERS_COLLECTION,
            predicate=lambda r: query <= r.get("display_name", "") < upper
            and r.get("id", r.get("uid")) != excluding_user_id,
            order=lambda r: r.get("display_name", ""),
            limit=self.search_limit,
        )
        return [User.from_record(r) for r in rows]

    # ------------------------------------------------------------------ rooms

    async def create_room(
        self,
        creator_id: Optional[str],
        participant_ids: List[str],
        name: Optional[str] = None,
        is_group: bool = False,
    ) -> Result[ChatRoom]:
        """
        Create a room, or return the existing private room for the same pair.

        Args:
            creator_id: Caller; always added to the participants
            participant_ids: Other participants (duplicates are ignored)
            name: Required for group rooms, ignored for private rooms
            is_group: Group room (named, 2+ members) or private room (exactly 2)

        Returns:
            The new room, or for a private room whose participant set already
            has a room, that room

        Note:
            The existing-room lookup is a scan over private rooms that share a
            participant. Cross-process races are settled by a unique claim in
            "room_claims"; the loser re-reads and returns the winner's room.
        """
        return await self._run(
            "create_room",
            self._create_room(creator_id, participant_ids, name, is_group),
            creator_id=creator_id,
            is_group=is_group,
        )

    async def _create_room(self, creator_id, participant_ids, name, is_group) -> ChatRoom:
        if not creator_id:
            raise Unauthorized("Sign-in required")
        if isinstance(participant_ids, str) or not all(isinstance(p, str) for p in participant_ids):
            raise InvalidArgument("participant_ids must be a list of user ids")

        participants = [p for p in dict.fromkeys([*participant_ids, creator_id]) if p]
        name = (name or "").strip()
        if is_group:
            if not name:
                raise InvalidArgument("Group rooms need a name")
            if len(participants) < 2:
                raise InvalidArgument("Group rooms need at least two participants")
        elif len(participants) != 2:
            raise InvalidArgument("Private rooms need exactly two participants")

        names = {uid: await self.directory.lookup_display_name(uid) for uid in participants}

        if is_group:
            room = self._new_room(creator_id, participants, names, name, True)
            room.last_message_summary = f"{names[creator_id]} created the room"
            await self.event_log.commit([Change(ROOMS_COLLECTION, room.id, room.to_record(), op="create")])
            logger.info("✓ Created group room '%s' (%d members)", room.name, len(participants))
            return room

        key = _claim_key(participants)
        async with self._lock_for(f"pair:{key}"):
            existing = await self._find_private_room(participants)
            if existing is not None:
                logger.info("Reusing private room %s", existing.id)
                return existing

            room = self._new_room(creator_id, participants, names, "", False)
            room.last_message_summary = PRIVATE_ROOM_NOTICE
            claim = {"room_id": room.id, "claimed_at": room.created_at.isoformat()}
            try:
                await self.store.create(CLAIMS_COLLECTION, key, claim)
            except Conflict:
                winner = await self._resolve_claim(key, participants)
                if winner is not None:
                    return winner
                # stale claim from a creator that never committed; take it over
                await self.store.put(CLAIMS_COLLECTION, key, claim)

            await self.event_log.commit([Change(ROOMS_COLLECTION, room.id, room.to_record(), op="create")])
            logger.info("✓ Created private room %s", room.id)
            return room

    def _new_room(self, creator_id, participants, names, name, is_group) -> ChatRoom:
        return ChatRoom(
            id=uuid.uuid4().hex,
            is_group=is_group,
            participant_ids=sorted(participants),
            participant_names=names,
            name=name,
            created_by=creator_id,
            created_at=self.clock(),
        )

    async def _find_private_room(self, participants: List[str]) -> Optional[ChatRoom]:
        wanted = set(participants)
        rows = await self.store.query(
            ROOMS_COLLECTION,
            predicate=lambda r: not r.get("is_group") and bool(wanted & set(room_participants(r))),
        )
        for row in rows:
            if set(room_participants(row)) == wanted:
                return ChatRoom.from_record(row)
        return None

    async def _resolve_claim(self, key: str, participants: List[str]) -> Optional[ChatRoom]:
        """
        Another creator claimed this pair first. Return its room, None if the
        claim is stale, or raise Conflict while the winner is still committing.
        """
        existing = await self._find_private_room(participants)
        if existing is not None:
            return existing
        claim = await self.store.get(CLAIMS_COLLECTION, key)
        if claim is not None:
            record = await self.store.get(ROOMS_COLLECTION, claim["room_id"])
            if record is not None:
                return ChatRoom.from_record(record)
            claimed_at = datetime.fromisoformat(claim["claimed_at"])
            if self.clock() - claimed_at < CLAIM_TTL:
                raise Conflict("Room creation already in progress, retry shortly")
        return None

    async def get_room(self, room_id: str) -> Result[ChatRoom]:
        return await self._run("get_room", self._get_room(room_id), room_id=room_id)

    async def _get_room(self, room_id) -> ChatRoom:
        record = await self.store.get(ROOMS_COLLECTION, room_id)
        if record is None:
            raise NotFound("Room not found")
        return ChatRoom.from_record(record)

    # --------------------------------------------------------------- messages

    async def send_message(
        self,
        sender_id: Optional[str],
        room_id: str,
        content: str,
        type: MessageType = MessageType.TEXT,
        image_url: Optional[str] = None,
    ) -> Result[Message]:
        """
        Append a message and update the room's last-message fields.

        Both writes are one EventLog batch, serialized per room, so room
        subscribers never see the message without the summary (or the
        reverse) and the summary always matches the newest message.
        """
        return await self._run(
            "send_message",
            self._send_message(sender_id, room_id, content, type, image_url),
            sender_id=sender_id,
            room_id=room_id,
        )

    async def _send_message(self, sender_id, room_id, content, type, image_url) -> Message:
        if not sender_id:
            raise Unauthorized("Sign-in required")
        try:
            type = MessageType(type)
        except ValueError:
            raise InvalidArgument(f"Unknown message type: {type}")
        if content is not None and not isinstance(content, str):
            raise InvalidArgument("Message content must be text")
        content = (content or "").strip()
        if type == MessageType.TEXT and not content:
            raise InvalidArgument("Message content is empty")
        if type == MessageType.IMAGE and not image_url:
            raise InvalidArgument("Image messages need an image_url")

        async with self._lock_for(f"room:{room_id}"):
            if await self.store.get(ROOMS_COLLECTION, room_id) is None:
                raise NotFound("Room not found")

            message = Message(
                id=uuid.uuid4().hex,
                chat_room_id=room_id,
                sender_id=sender_id,
                sender_name=await self.directory.lookup_display_name(sender_id),
                content=content,
                type=type,
                timestamp=self.clock(),
                image_url=image_url,
            )
            record = message.to_record()
            summary = {
                "last_message_summary": message.summary(),
                "last_message_sender_id": message.sender_id,
                "last_message_sender_name": message.sender_name,
                "last_message_time": record["timestamp"],
            }
            entries = await self.event_log.commit(
                [
                    Change(messages_collection(room_id), message.id, record, op="create", stamp_sequence="sequence"),
                    Change(ROOMS_COLLECTION, room_id, summary, op="update"),
                ]
            )

        logger.debug("Message %s appended to room %s (seq %d)", message.id, room_id, entries[0].sequence)
        return Message.from_record(entries[0].record)

    # ----------------------------------------------------------- live queries

    async def list_rooms(
        self, user_id: Optional[str], sink: Optional[Callable[[Push], None]] = None
    ) -> Result[Subscription]:
        """
        Live room list for ``user_id``: newest activity first, rooms without
        messages last. Subscribe again to restart from the current snapshot.
        """
        return await self._run("list_rooms", self._list_rooms(user_id, sink), user_id=user_id)

    async def _list_rooms(self, user_id, sink) -> Subscription:
        if not user_id:
            raise Unauthorized("Sign-in required")
        return self.subscriptions.subscribe(RoomsForUser(user_id), sink=sink)

    async def list_messages(
        self, room_id: str, sink: Optional[Callable[[Push], None]] = None
    ) -> Result[Subscription]:
        """Live message feed, oldest first; equal timestamps keep append order."""
        return await self._run("list_messages", self._list_messages(room_id, sink), room_id=room_id)

    async def _list_messages(self, room_id, sink) -> Subscription:
        await self._get_room(room_id)
        return self.subscriptions.subscribe(MessagesInRoom(room_id), sink=sink)

    async def room_snapshot(self, user_id: Optional[str]) -> Result[List[ChatRoom]]:
        return await self._run("room_snapshot", self._room_snapshot(user_id), user_id=user_id)

    async def _room_snapshot(self, user_id) -> List[ChatRoom]:
        if not user_id:
            raise Unauthorized("Sign-in required")
        return (await self.subscriptions.snapshot(RoomsForUser(user_id))).items

    async def message_snapshot(self, room_id: str) -> Result[List[Message]]:
        return await self._run("message_snapshot", self._message_snapshot(room_id), room_id=room_id)

    async def _message_snapshot(self, room_id) -> List[Message]:
        await self._get_room(room_id)
        return (await self.subscriptions.snapshot(MessagesInRoom(room_id))).items

    # -------------------------------------------------------------- assistant

    async def ask_assistant(self, user_id: Optional[str], room_id: str, prompt: str) -> Result[str]:
        """
        Ask the completion collaborator about ``prompt`` with the room's last
        few messages as context. Failures come back as a Result whose error
        message is safe to show as-is.
        """
        return await self._run(
            "ask_assistant", self._ask_assistant(user_id, room_id, prompt), user_id=user_id, room_id=room_id
        )

    async def _ask_assistant(self, user_id, room_id, prompt) -> str:
        if not user_id:
            raise Unauthorized("Sign-in required")
        if not prompt or not prompt.strip():
            raise InvalidArgument("Prompt is empty")
        if self.assistant is None:
            raise Unavailable("Assistant is not configured")
        messages = await self._message_snapshot(room_id)
        return await self.assistant.complete(prompt.strip(), messages[-CONTEXT_MESSAGES:])
