import asyncio
import logging
from typing import Optional

from chatcore.database.store import RemoteStore
from chatcore.errors import ConnectivityError, QueueStalled
from chatcore.schemas.offline import OfflineOperation, OfflineOperationKind
from chatcore.services.chat_service import ChatService
from chatcore.services.offline_queue import OfflineQueue
from chatcore.services.presence_service import PresenceService

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Watches the remote store and drains the offline queue once it is reachable again."""

    def __init__(
        self,
        store: RemoteStore,
        queue: OfflineQueue,
        chat_service: ChatService,
        presence_service: PresenceService,
        probe_interval: float = 5.0,
    ) -> None:
        self._store = store
        self._queue = queue
        self._chat_service = chat_service
        self._presence_service = presence_service
        self._probe_interval = probe_interval
        self.online: Optional[bool] = None
        self.last_stall: Optional[QueueStalled] = None

    async def apply(self, operation: OfflineOperation) -> None:
        if operation.kind is OfflineOperationKind.SET_TYPING:
            await self._presence_service.apply(operation)
        else:
            await self._chat_service.apply(operation)

    async def drain(self) -> int:
        """Replay the offline queue. Raises QueueStalled when an operation fails."""
        try:
            applied = await self._queue.drain(self.apply)
        except QueueStalled as stall:
            self.last_stall = stall
            raise
        self.last_stall = None
        return applied

    async def check(self) -> bool:
        try:
            await self._store.ping()
        except ConnectivityError:
            if self.online is not False:
                logger.warning("Remote store unreachable; mutations will be queued")
            self.online = False
            return False

        came_back = self.online is not True
        self.online = True
        if came_back:
            logger.info("Remote store reachable")
        try:
            if len(self._queue):
                await self.drain()
            if came_back:
                await self._presence_service.flush_presence()
        except QueueStalled as stall:
            logger.error("Offline queue stalled at operation %s: %r", stall.op_id, stall.cause)
            if isinstance(stall.cause, ConnectivityError):
                self.online = False
        except ConnectivityError:
            self.online = False
        return bool(self.online)

    async def run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._probe_interval)
