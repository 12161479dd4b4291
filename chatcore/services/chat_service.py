import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from chatcore.database.store import RemoteStore, StoreTransaction
from chatcore.errors import (
    ConflictError,
    ConnectivityError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from chatcore.repositories.conversation_repository import ConversationRepository
from chatcore.repositories.message_repository import MessageRepository
from chatcore.schemas.conversation import Conversation
from chatcore.schemas.events import ConversationUpdated, MessageCreated, MessageDeleted, MessageStatusChanged
from chatcore.schemas.message import TOMBSTONE, Message, MessageStatus, MessageType
from chatcore.schemas.offline import OfflineOperation, OfflineOperationKind
from chatcore.services.delivery_hub import DeliveryHub, conversation_topic, user_conversations_topic
from chatcore.services.offline_queue import OfflineQueue
from chatcore.utils.clock import ONE_MILLISECOND, from_millis, utcnow
from chatcore.utils.conversation_key import parse_key, validate_user_id
from chatcore.utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E", MessageStatus, MessageType)

Cursor = Union[str, int, datetime, None]


def _coerce(enum_cls: Type[E], value: Union[E, str], what: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {what} {value!r}") from None


class ChatService:
    """
    Message store.

    Owns message records and keeps the conversation index in step with them:
    every mutation writes the message and its conversation row in one store
    transaction, serialized per conversation key, and publishes to the
    delivery hub only after the commit. Mutations that cannot reach the store
    are handed to the offline queue instead of failing.
    """

    def __init__(
        self,
        store: RemoteStore,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        hub: DeliveryHub,
        queue: OfflineQueue,
        conflict_retry_limit: int = 3,
        default_page_size: int = 30,
        max_page_size: int = 200,
    ) -> None:
        self._store = store
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._hub = hub
        self._queue = queue
        self._conflict_retry_limit = max(1, conflict_retry_limit)
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._locks = KeyedLock()

    # -- commands ---------------------------------------------------------

    async def send(self, sender_id: str, receiver_id: str, content: str, type: Union[MessageType, str] = MessageType.TEXT) -> Message:
        validate_user_id(sender_id)
        validate_user_id(receiver_id)
        if sender_id == receiver_id:
            raise ValidationError("Cannot send a message to yourself")
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")
        message = Message(
            id=uuid.uuid4().hex,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content.strip(),
            type=_coerce(MessageType, type, "message type"),
            status=MessageStatus.SENT,
            timestamp=utcnow(),
        )
        payload = {"message": message.model_dump(mode="json")}
        if self._queue_ahead(OfflineOperationKind.SEND, payload):
            return message
        try:
            return await self._commit_send(message) or message
        except ConnectivityError:
            self._queue.enqueue(OfflineOperationKind.SEND, payload)
        return message

    async def update_status(
        self,
        message_id: str,
        new_status: Union[MessageStatus, str],
        actor_id: Optional[str] = None,
    ) -> Optional[Message]:
        """
        Advance a message's status. When ``actor_id`` is given it must be the
        receiver; the check runs against the stored message, at replay time
        for queued updates.
        """
        status = _coerce(MessageStatus, new_status, "message status")
        payload = {"message_id": message_id, "status": status.value, "actor_id": actor_id}
        if self._queue_ahead(OfflineOperationKind.UPDATE_STATUS, payload):
            return None
        try:
            return await self._update_status_now(message_id, status, actor_id=actor_id)
        except ConnectivityError:
            self._queue.enqueue(OfflineOperationKind.UPDATE_STATUS, payload)
            return None

    async def mark_all_read(self, conversation_key: str, reader_id: str) -> int:
        validate_user_id(reader_id)
        if reader_id not in parse_key(conversation_key):
            raise ValidationError(f"{reader_id} is not a participant of {conversation_key}")
        payload = {"conversation_key": conversation_key, "reader_id": reader_id}
        if self._queue_ahead(OfflineOperationKind.MARK_READ, payload):
            return 0
        try:
            return await self._mark_all_read_now(conversation_key, reader_id)
        except ConnectivityError:
            self._queue.enqueue(OfflineOperationKind.MARK_READ, payload)
            return 0

    async def soft_delete(self, message_id: str, actor_id: Optional[str] = None) -> Optional[Message]:
        payload = {"message_id": message_id, "actor_id": actor_id}
        if self._queue_ahead(OfflineOperationKind.DELETE, payload):
            return None
        try:
            return await self._soft_delete_now(message_id, actor_id=actor_id)
        except ConnectivityError:
            self._queue.enqueue(OfflineOperationKind.DELETE, payload)
            return None

    async def recount_unread(self, conversation_key: str) -> Dict[str, int]:
        """Recompute the unread counters of a conversation from message state."""
        async with self._locks.hold(conversation_key):

            async def work(txn: StoreTransaction) -> Tuple[Dict[str, int], Optional[Conversation]]:
                if await self._conversation_repo.get(conversation_key, txn) is None:
                    raise NotFoundError("conversation", conversation_key)
                counts = {
                    user_id: await self._message_repo.count_unread(txn, conversation_key, user_id)
                    for user_id in parse_key(conversation_key)
                }
                await self._conversation_repo.set_unread(txn, conversation_key, counts)
                return counts, await self._conversation_repo.get(conversation_key, txn)

            counts, conversation = await self._transact(work)
            self._publish_conversation(conversation)
        return counts

    # -- queries ----------------------------------------------------------

    async def get(self, message_id: str) -> Message:
        return await self._load(message_id)

    async def page(self, conversation_key: str, limit: Optional[int] = None, before: Cursor = None) -> List[Message]:
        parse_key(conversation_key)
        return await self._message_repo.page(conversation_key, self.page_limit(limit), await self._resolve_cursor(before))

    def page_limit(self, limit: Optional[int] = None) -> int:
        """Resolve a requested page size: default when unset, capped at the maximum."""
        if limit is None:
            return self._default_page_size
        if limit < 1:
            raise ValidationError("Page limit must be positive")
        return min(limit, self._max_page_size)

    async def list_for_user(self, user_id: str, limit: Optional[int] = None) -> List[Conversation]:
        validate_user_id(user_id)
        return await self._conversation_repo.list_for_user(user_id, limit=limit)

    async def get_conversation(self, conversation_key: str) -> Optional[Conversation]:
        return await self._conversation_repo.get(conversation_key)

    async def unread_count(self, conversation_key: str, user_id: str) -> int:
        conversation = await self._conversation_repo.get(conversation_key)
        return conversation.unread_for(user_id) if conversation else 0

    # -- replay -----------------------------------------------------------

    async def apply(self, operation: OfflineOperation) -> None:
        """Apply a queued operation against the remote store."""
        payload: Dict[str, Any] = operation.payload
        try:
            if operation.kind is OfflineOperationKind.SEND:
                await self._commit_send(Message.model_validate(payload["message"]), replay=True)
            elif operation.kind is OfflineOperationKind.UPDATE_STATUS:
                await self._update_status_now(
                    payload["message_id"], MessageStatus(payload["status"]), actor_id=payload.get("actor_id"), replay=True
                )
            elif operation.kind is OfflineOperationKind.MARK_READ:
                await self._mark_all_read_now(payload["conversation_key"], payload["reader_id"])
            elif operation.kind is OfflineOperationKind.DELETE:
                await self._soft_delete_now(payload["message_id"], actor_id=payload.get("actor_id"), replay=True)
            else:
                raise ValueError(f"{operation.kind.value} operations are not handled by the message store")
        except ForbiddenError as exc:
            # nothing to retry; the queue moves on without it
            logger.warning("Dropping queued %s operation %s: %s", operation.kind.value, operation.op_id, exc)

    # -- internals --------------------------------------------------------

    def _queue_ahead(self, kind: OfflineOperationKind, payload: Dict[str, Any]) -> bool:
        # Anything still queued must reach the store first.
        if not len(self._queue):
            return False
        self._queue.enqueue(kind, payload)
        return True

    async def _transact(self, work: Callable[[StoreTransaction], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                async with self._store.transaction() as txn:
                    result = await work(txn)
                return result
            except ConflictError:
                if attempt >= self._conflict_retry_limit:
                    raise
                logger.info("Write conflict on attempt %d/%d, retrying", attempt, self._conflict_retry_limit)
                attempt += 1

    async def _load(self, message_id: str) -> Message:
        message = await self._message_repo.get(message_id)
        if message is None:
            raise NotFoundError("message", message_id)
        return message

    async def _commit_send(self, message: Message, replay: bool = False) -> Optional[Message]:
        """Store a message and update its conversation row. Returns None for an already stored replay."""
        key = message.conversation_key
        async with self._locks.hold(key):

            async def work(txn: StoreTransaction) -> Tuple[Optional[Message], Optional[Conversation]]:
                if replay and await self._message_repo.get(message.id, txn) is not None:
                    return None, None
                current = await self._conversation_repo.get(key, txn)
                stamped = message.model_copy(update={"timestamp": await self._stamp(txn, message, current, replay)})
                await self._message_repo.insert(txn, stamped)
                await self._conversation_repo.record_message(txn, stamped, current)
                return stamped, await self._conversation_repo.get(key, txn)

            stored, conversation = await self._transact(work)
            if stored is None:
                logger.info("Message %s already stored, skipping replayed send", message.id)
                return None
            self._hub.publish(conversation_topic(key), MessageCreated(message=stored))
            self._publish_conversation(conversation)
        return stored

    async def _stamp(self, txn: StoreTransaction, message: Message, current: Optional[Conversation], replay: bool) -> datetime:
        # Timestamps are unique within a conversation, which is what makes the
        # exclusive timestamp cursor of page() exact. Live sends are also
        # strictly later than the newest stored message; replays keep the time
        # they were issued at unless that millisecond is taken.
        stamp = message.timestamp if replay else utcnow()
        if not replay and current is not None and current.last_message_at is not None:
            stamp = max(stamp, current.last_message_at + ONE_MILLISECOND)
        while await self._message_repo.exists_at(txn, message.conversation_key, stamp):
            stamp += ONE_MILLISECOND
        return stamp

    async def _update_status_now(
        self,
        message_id: str,
        status: MessageStatus,
        actor_id: Optional[str] = None,
        replay: bool = False,
    ) -> Message:
        key = (await self._load(message_id)).conversation_key
        async with self._locks.hold(key):

            async def work(txn: StoreTransaction) -> Tuple[Message, bool, Optional[Conversation]]:
                current = await self._message_repo.get(message_id, txn)
                if current is None:
                    raise NotFoundError("message", message_id)
                if actor_id is not None and actor_id != current.receiver_id:
                    raise ForbiddenError(f"Only the receiver can update the status of message {message_id}")
                if status is current.status:
                    return current, False, None
                if status.rank < current.status.rank:
                    if replay:
                        return current, False, None
                    raise InvalidTransitionError(
                        f"Message {message_id} cannot move from {current.status.value} to {status.value}"
                    )
                await self._message_repo.set_status(txn, message_id, status)
                conversation = None
                if status is MessageStatus.READ:
                    await self._conversation_repo.decrement_unread(txn, key, current.receiver_id, utcnow())
                    conversation = await self._conversation_repo.get(key, txn)
                return current, True, conversation

            previous, changed, conversation = await self._transact(work)
            if not changed:
                return previous
            self._hub.publish(
                conversation_topic(key),
                MessageStatusChanged(message_id=message_id, conversation_key=key, previous=previous.status, status=status),
            )
            if conversation is not None:
                self._publish_conversation(conversation)
        return previous.model_copy(update={"status": status})

    async def _mark_all_read_now(self, conversation_key: str, reader_id: str) -> int:
        async with self._locks.hold(conversation_key):

            async def work(txn: StoreTransaction) -> Tuple[List[Message], Optional[Conversation]]:
                conversation = await self._conversation_repo.get(conversation_key, txn)
                if conversation is None:
                    return [], None
                unread = await self._message_repo.find_unread_for(txn, conversation_key, reader_id)
                if not unread and not conversation.unread_for(reader_id):
                    return [], None
                for message in unread:
                    await self._message_repo.set_status(txn, message.id, MessageStatus.READ)
                await self._conversation_repo.record_read(txn, conversation_key, reader_id, utcnow())
                return unread, await self._conversation_repo.get(conversation_key, txn)

            unread, conversation = await self._transact(work)
            topic = conversation_topic(conversation_key)
            for message in unread:
                self._hub.publish(
                    topic,
                    MessageStatusChanged(
                        message_id=message.id,
                        conversation_key=conversation_key,
                        previous=message.status,
                        status=MessageStatus.READ,
                    ),
                )
            if conversation is not None:
                self._publish_conversation(conversation)
        return len(unread)

    async def _soft_delete_now(self, message_id: str, actor_id: Optional[str] = None, replay: bool = False) -> Optional[Message]:
        key = (await self._load(message_id)).conversation_key
        async with self._locks.hold(key):

            async def work(txn: StoreTransaction) -> Tuple[Optional[Message], Optional[Conversation]]:
                current = await self._message_repo.get(message_id, txn)
                if current is None:
                    raise NotFoundError("message", message_id)
                if actor_id is not None and actor_id != current.sender_id:
                    raise ForbiddenError(f"Only the sender can delete message {message_id}")
                if current.is_deleted:
                    if replay:
                        return None, None
                    raise InvalidTransitionError(f"Message {message_id} is already deleted")
                await self._message_repo.tombstone(txn, message_id)
                deleted = current.model_copy(update={"is_deleted": True, "content": TOMBSTONE})
                conversation = None
                if await self._conversation_repo.record_tombstone(txn, deleted):
                    conversation = await self._conversation_repo.get(key, txn)
                return deleted, conversation

            deleted, conversation = await self._transact(work)
            if deleted is None:
                return None
            self._hub.publish(conversation_topic(key), MessageDeleted(message=deleted))
            if conversation is not None:
                self._publish_conversation(conversation)
        return deleted

    def _publish_conversation(self, conversation: Optional[Conversation]) -> None:
        if conversation is None:
            return
        event = ConversationUpdated(conversation=conversation)
        for user_id in conversation.participant_ids:
            self._hub.publish(user_conversations_topic(user_id), event)

    async def _resolve_cursor(self, before: Cursor) -> Optional[datetime]:
        if before is None:
            return None
        if isinstance(before, datetime):
            return before if before.tzinfo else before.replace(tzinfo=timezone.utc)
        if isinstance(before, int) and not isinstance(before, bool):
            return from_millis(before)
        if isinstance(before, str):
            return (await self._load(before)).timestamp
        raise ValidationError(f"Unsupported page cursor {before!r}")
