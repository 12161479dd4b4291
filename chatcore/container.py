"""
Composition root.

``ChatCore`` builds every component once and hands each its collaborators
through the constructor. Nothing in the core looks dependencies up globally;
the choice between the in-memory and MongoDB stores, and between local and
Redis-backed fan-out, is made here and nowhere else.
"""
import asyncio
import logging
from typing import List, Optional

from chatcore.config import Settings
from chatcore.database.memory_store import InMemoryRemoteStore
from chatcore.database.store import RemoteStore
from chatcore.errors import ChatError, ConnectivityError
from chatcore.repositories.conversation_repository import ConversationRepository
from chatcore.repositories.message_repository import MessageRepository
from chatcore.repositories.presence_repository import PresenceRepository
from chatcore.services.chat_service import ChatService
from chatcore.services.connectivity import ConnectivityMonitor
from chatcore.services.delivery_hub import DeliveryHub
from chatcore.services.identity import IdentityProvider, LocalIdentityProvider
from chatcore.services.offline_queue import FileQueueStorage, MemoryQueueStorage, OfflineQueue, QueueStorage
from chatcore.services.presence_service import PresenceService
from chatcore.utils.realtime_bus import NoopBus, RealtimeBus, RedisBus

logger = logging.getLogger(__name__)


class ChatCore:

    def __init__(
        self,
        settings: Settings,
        store: RemoteStore,
        bus: Optional[RealtimeBus] = None,
        queue_storage: Optional[QueueStorage] = None,
        identity: Optional[IdentityProvider] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.bus = bus or NoopBus()
        self.identity = identity or LocalIdentityProvider()
        self.hub = DeliveryHub(self.bus, buffer_size=settings.SUBSCRIBER_BUFFER_SIZE)
        self.queue = OfflineQueue(queue_storage or MemoryQueueStorage())
        self.chat = ChatService(
            store,
            MessageRepository(store),
            ConversationRepository(store),
            self.hub,
            self.queue,
            conflict_retry_limit=settings.CONFLICT_RETRY_LIMIT,
            default_page_size=settings.DEFAULT_PAGE_SIZE,
            max_page_size=settings.MAX_PAGE_SIZE,
        )
        self.presence = PresenceService(
            PresenceRepository(store),
            self.hub,
            self.queue,
            typing_timeout=settings.TYPING_TIMEOUT_SECONDS,
        )
        self.connectivity = ConnectivityMonitor(
            store,
            self.queue,
            self.chat,
            self.presence,
            probe_interval=settings.CONNECTIVITY_PROBE_SECONDS,
        )
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings, identity: Optional[IdentityProvider] = None) -> "ChatCore":
        if settings.MONGO_URL:
            from chatcore.database.mongo_store import MongoRemoteStore

            store: RemoteStore = MongoRemoteStore.from_url(settings.MONGO_URL, settings.MONGO_DB)
        else:
            store = InMemoryRemoteStore()
        bus: RealtimeBus = RedisBus.from_url(settings.REDIS_URL) if settings.REDIS_URL else NoopBus()
        storage = FileQueueStorage(settings.OFFLINE_QUEUE_PATH)
        return cls(settings, store, bus=bus, queue_storage=storage, identity=identity)

    async def start(self) -> None:
        try:
            await self.store.prepare()
        except ConnectivityError:
            logger.warning("Remote store unreachable at startup; continuing offline")
        self._tasks.append(asyncio.create_task(self.connectivity.run()))
        self._tasks.append(asyncio.create_task(self._follow_identity()))
        if self.bus.enabled:
            self._tasks.append(asyncio.create_task(self.bus.run_relay(self.hub)))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.presence.close()
        self.hub.close()
        await self.bus.close()
        await self.store.close()

    async def _follow_identity(self) -> None:
        # Signing in or out is the client lifecycle signal that drives presence.
        async for change in self.identity.auth_changes():
            if change.user_id is None:
                continue
            try:
                await self.presence.set_online(change.user_id, change.signed_in)
            except ChatError:
                logger.exception("Could not update presence of %s", change.user_id)
