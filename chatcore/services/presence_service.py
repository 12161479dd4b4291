import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional, Set, Tuple

from chatcore.errors import ConnectivityError, ValidationError
from chatcore.repositories.presence_repository import PresenceRepository
from chatcore.schemas.events import PresenceChanged, TypingChanged
from chatcore.schemas.offline import OfflineOperation, OfflineOperationKind
from chatcore.schemas.presence import PresenceState, TypingState
from chatcore.services.delivery_hub import DeliveryHub, presence_topic, typing_topic
from chatcore.services.offline_queue import OfflineQueue
from chatcore.utils.clock import utcnow
from chatcore.utils.conversation_key import parse_key, validate_user_id
from chatcore.utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

DEFAULT_TYPING_TIMEOUT = 5.0


class PresenceService:
    """
    Presence and typing signaler.

    Presence is last-write-wins per user and typing is ephemeral per
    (conversation, user). Both are published to the delivery hub as soon as
    they change; persistence to the remote store follows and never blocks the
    signal. A typing indicator that is not refreshed within the timeout is
    switched off here, by a timer this service owns.
    """

    def __init__(
        self,
        presence_repo: PresenceRepository,
        hub: DeliveryHub,
        queue: OfflineQueue,
        typing_timeout: float = DEFAULT_TYPING_TIMEOUT,
    ) -> None:
        self._presence_repo = presence_repo
        self._hub = hub
        self._queue = queue
        self._typing_timeout = typing_timeout
        self._presence: Dict[str, PresenceState] = {}
        self._unsaved: Set[str] = set()
        self._typing: Dict[Tuple[str, str], TypingState] = {}
        self._timers: Dict[Tuple[str, str], asyncio.Task] = {}
        self._locks = KeyedLock()

    async def set_online(self, user_id: str, is_online: bool) -> PresenceState:
        validate_user_id(user_id)
        async with self._locks.hold(user_id):
            state = PresenceState(user_id=user_id, is_online=is_online, last_seen=utcnow())
            self._presence[user_id] = state
            self._hub.publish(presence_topic(user_id), PresenceChanged(presence=state))
            try:
                await self._presence_repo.save_presence(state)
                self._unsaved.discard(user_id)
            except ConnectivityError:
                logger.warning("Presence of %s kept locally until the store is reachable", user_id)
                self._unsaved.add(user_id)
        return state

    async def get_presence(self, user_id: str) -> PresenceState:
        validate_user_id(user_id)
        if user_id in self._presence:
            return self._presence[user_id]
        stored = await self._presence_repo.get_presence(user_id)
        return stored or PresenceState(user_id=user_id)

    async def flush_presence(self) -> int:
        """Persist presence changes that happened while the store was unreachable."""
        flushed = 0
        for user_id in list(self._unsaved):
            async with self._locks.hold(user_id):
                await self._presence_repo.save_presence(self._presence[user_id])
                self._unsaved.discard(user_id)
                flushed += 1
        return flushed

    async def set_typing(self, conversation_key: str, user_id: str, is_typing: bool) -> TypingState:
        validate_user_id(user_id)
        if user_id not in parse_key(conversation_key):
            raise ValidationError(f"{user_id} is not a participant of {conversation_key}")
        key = (conversation_key, user_id)
        state = TypingState(conversation_key=conversation_key, user_id=user_id, is_typing=is_typing, updated_at=utcnow())
        self._typing[key] = state
        self._cancel_timer(key)
        if is_typing:
            self._timers[key] = asyncio.create_task(self._expire_after(conversation_key, user_id))
        self._hub.publish(typing_topic(conversation_key), TypingChanged(typing=state))
        await self._persist_typing(state)
        return state

    def is_typing(self, conversation_key: str, user_id: str) -> bool:
        state = self._typing.get((conversation_key, user_id))
        return bool(state and state.is_typing)

    async def apply(self, operation: OfflineOperation) -> None:
        if operation.kind is not OfflineOperationKind.SET_TYPING:
            raise ValueError(f"{operation.kind.value} operations are not handled by the presence service")
        state = TypingState.model_validate(operation.payload["typing"])
        if state.is_typing and utcnow() - state.updated_at > timedelta(seconds=self._typing_timeout):
            # long expired by now; record it as stopped
            state = state.model_copy(update={"is_typing": False})
        await self._presence_repo.save_typing(state)

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    def _cancel_timer(self, key: Tuple[str, str]) -> None:
        task: Optional[asyncio.Task] = self._timers.pop(key, None)
        if task is not None:
            task.cancel()

    async def _expire_after(self, conversation_key: str, user_id: str) -> None:
        await asyncio.sleep(self._typing_timeout)
        key = (conversation_key, user_id)
        self._timers.pop(key, None)
        state = TypingState(conversation_key=conversation_key, user_id=user_id, is_typing=False, updated_at=utcnow())
        self._typing[key] = state
        logger.debug("Typing indicator of %s in %s expired", user_id, conversation_key)
        self._hub.publish(typing_topic(conversation_key), TypingChanged(typing=state, expired=True))
        await self._persist_typing(state)

    async def _persist_typing(self, state: TypingState) -> None:
        # Queued typing changes are replayed first, so a later state never lands before an earlier one.
        payload = {"typing": state.model_dump(mode="json")}
        if len(self._queue):
            self._queue.enqueue(OfflineOperationKind.SET_TYPING, payload)
            return
        try:
            await self._presence_repo.save_typing(state)
        except ConnectivityError:
            self._queue.enqueue(OfflineOperationKind.SET_TYPING, payload)
