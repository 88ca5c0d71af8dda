# chatsync/services/directory.py

from __future__ import annotations

from typing import Optional, Protocol

from chatsync.models.models import UNKNOWN_USER, User
from chatsync.services.store import Store

USERS_COLLECTION = "users"


class UserDirectory(Protocol):
    async def lookup_display_name(self, user_id: str) -> str:
        ...


class StoreUserDirectory:
    """Resolves display names from the "users" collection."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def get_user(self, user_id: str) -> Optional[User]:
        record = await self.store.get(USERS_COLLECTION, user_id)
        return User.from_record(record) if record is not None else None

    async def lookup_display_name(self, user_id: str) -> str:
        user = await self.get_user(user_id)
        if user is None or not user.display_name:
            return UNKNOWN_USER
        return user.display_name
