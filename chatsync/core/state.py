# chatsync/core/state.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from chatsync.core.config import Settings, settings as default_settings
from chatsync.core.logging import get_logger
from chatsync.services.assistant import CompletionClient, OpenAICompletionClient
from chatsync.services.auth_service import TokenAuthenticator
from chatsync.services.chat_service import ChatService
from chatsync.services.connection_manager import ConnectionManager
from chatsync.services.directory import StoreUserDirectory
from chatsync.services.event_log import EventLog
from chatsync.services.redis_store import RedisStore
from chatsync.services.store import GuardedStore, MemoryStore, Store
from chatsync.services.subscription_manager import SubscriptionManager

logger = get_logger(__name__)


@dataclass
class AppState:
    """Everything a running app needs, wired once at startup."""

    settings: Settings
    store: Store
    event_log: EventLog
    subscriptions: SubscriptionManager
    service: ChatService
    authenticator: TokenAuthenticator
    connections: ConnectionManager
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    async def close(self) -> None:
        await self.connections.close_all()
        await self.subscriptions.close()
        await self.store.close()


async def build_state(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    assistant: Optional[CompletionClient] = None,
) -> AppState:
    """
    Wire store -> event log -> subscriptions -> service.

    Args:
        settings: Configuration (defaults to the environment-backed settings)
        store: Backend to use instead of the one named by STORE_BACKEND
        assistant: Completion client instead of the OpenAI one built from OPENAI_*
    """
    settings = settings or default_settings

    if store is None:
        if settings.STORE_BACKEND == "redis":
            store = RedisStore(settings.redis_url(), prefix=settings.REDIS_PREFIX)
            await store.connect()
        else:
            store = MemoryStore()
    guarded = GuardedStore(store, timeout=settings.STORE_TIMEOUT_SECONDS)

    event_log = EventLog(guarded)
    await event_log.recover()
    subscriptions = SubscriptionManager(event_log)

    if assistant is None and settings.OPENAI_API_KEY:
        assistant = OpenAICompletionClient(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            model=settings.OPENAI_MODEL,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
        )

    service = ChatService(
        store=guarded,
        event_log=event_log,
        subscriptions=subscriptions,
        directory=StoreUserDirectory(guarded),
        assistant=assistant,
        search_limit=settings.SEARCH_LIMIT,
    )
    logger.info(
        "✓ Chat core ready (store=%s, assistant=%s)",
        type(store).__name__,
        "on" if assistant is not None else "off",
    )
    return AppState(
        settings=settings,
        store=guarded,
        event_log=event_log,
        subscriptions=subscriptions,
        service=service,
        authenticator=TokenAuthenticator(settings.AUTH_SECRET, settings.AUTH_ALGORITHM),
        connections=ConnectionManager(service),
    )
