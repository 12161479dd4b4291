"""
Conversation index.

One summary row per conversation key: the last message, when the pair last
talked, and an unread counter per participant. Rows are only ever written from
inside a message store transaction, which is why every mutating method takes
the transaction handle explicitly.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING

from chatcore.database.store import RemoteStore, StoreTransaction
from chatcore.schemas.conversation import Conversation
from chatcore.schemas.message import TOMBSTONE, Message

PREVIEW_LENGTH = 200


class ConversationRepository:

    collection = "conversations"

    def __init__(self, store: RemoteStore) -> None:
        self._store = store

    async def get(self, conversation_key: str, txn: Optional[StoreTransaction] = None) -> Optional[Conversation]:
        source = txn or self._store
        doc = await source.get(self.collection, conversation_key)
        return Conversation.from_document(doc) if doc else None

    async def record_message(self, txn: StoreTransaction, message: Message, current: Optional[Conversation] = None) -> None:
        """
        Count the message as unread for its receiver and, unless a newer
        message is already recorded, make it the conversation's last message.

        ``current`` is the row as read earlier in the same transaction.
        """
        set_fields: Dict[str, Any] = {}
        if current is None or current.last_message_at is None or message.timestamp >= current.last_message_at:
            set_fields.update(
                last_message_id=message.id,
                last_message_preview=message.content[:PREVIEW_LENGTH],
                last_message_sender_id=message.sender_id,
                last_message_at=message.timestamp,
            )
        if current is None or message.timestamp > current.updated_at:
            set_fields["updated_at"] = message.timestamp
        await txn.update(
            self.collection,
            message.conversation_key,
            set_fields=set_fields,
            inc={
                f"unread_count.{message.receiver_id}": 1,
                f"unread_count.{message.sender_id}": 0,
            },
            set_on_insert={"participant_ids": sorted([message.sender_id, message.receiver_id])},
            upsert=True,
        )

    async def record_read(self, txn: StoreTransaction, conversation_key: str, reader_id: str, updated_at: datetime) -> None:
        await txn.update(
            self.collection,
            conversation_key,
            set_fields={f"unread_count.{reader_id}": 0, "updated_at": updated_at},
        )

    async def decrement_unread(self, txn: StoreTransaction, conversation_key: str, user_id: str, updated_at: datetime) -> None:
        current = await self.get(conversation_key, txn)
        if current is None or current.unread_for(user_id) <= 0:
            return
        await txn.update(
            self.collection,
            conversation_key,
            set_fields={"updated_at": updated_at},
            inc={f"unread_count.{user_id}": -1},
        )

    async def record_tombstone(self, txn: StoreTransaction, message: Message) -> bool:
        current = await self.get(message.conversation_key, txn)
        if current is None or current.last_message_id != message.id:
            return False
        await txn.update(self.collection, message.conversation_key, set_fields={"last_message_preview": TOMBSTONE})
        return True

    async def set_unread(self, txn: StoreTransaction, conversation_key: str, counts: Dict[str, int]) -> None:
        await txn.update(
            self.collection,
            conversation_key,
            set_fields={f"unread_count.{user_id}": count for user_id, count in counts.items()},
        )

    async def list_for_user(self, user_id: str, limit: Optional[int] = None) -> List[Conversation]:
        docs = await self._store.find(
            self.collection,
            {"participant_ids": user_id},
            sort=[("updated_at", DESCENDING), ("_id", DESCENDING)],
            limit=limit,
        )
        return [Conversation.from_document(d) for d in docs]
