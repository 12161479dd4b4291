from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING

from chatcore.database.store import RemoteStore, StoreTransaction
from chatcore.schemas.message import TOMBSTONE, Message, MessageStatus


class MessageRepository:

    collection = "messages"

    def __init__(self, store: RemoteStore) -> None:
        self._store = store

    async def get(self, message_id: str, txn: Optional[StoreTransaction] = None) -> Optional[Message]:
        source = txn or self._store
        doc = await source.get(self.collection, message_id)
        return Message.from_document(doc) if doc else None

    async def insert(self, txn: StoreTransaction, message: Message) -> None:
        await txn.insert(self.collection, dict(message.to_document()))

    async def set_status(self, txn: StoreTransaction, message_id: str, status: MessageStatus) -> None:
        await txn.update(self.collection, message_id, set_fields={"status": status.value})

    async def tombstone(self, txn: StoreTransaction, message_id: str) -> None:
        await txn.update(self.collection, message_id, set_fields={"is_deleted": True, "content": TOMBSTONE})

    async def find_unread_for(self, txn: StoreTransaction, conversation_key: str, reader_id: str) -> List[Message]:
        docs = await txn.find(
            self.collection,
            {
                "conversation_key": conversation_key,
                "receiver_id": reader_id,
                "status": {"$ne": MessageStatus.READ.value},
            },
            sort=[("timestamp", ASCENDING), ("_id", ASCENDING)],
        )
        return [Message.from_document(d) for d in docs]

    async def count_unread(self, txn: StoreTransaction, conversation_key: str, user_id: str) -> int:
        return len(await self.find_unread_for(txn, conversation_key, user_id))

    async def exists_at(self, txn: StoreTransaction, conversation_key: str, timestamp: datetime) -> bool:
        docs = await txn.find(self.collection, {"conversation_key": conversation_key, "timestamp": timestamp}, limit=1)
        return bool(docs)

    async def page(self, conversation_key: str, limit: int, before: Optional[datetime] = None) -> List[Message]:
        query: Dict[str, Any] = {"conversation_key": conversation_key}
        if before is not None:
            # exclusive: nothing at or after the cursor's timestamp
            query["timestamp"] = {"$lt": before}
        docs = await self._store.find(
            self.collection,
            query,
            sort=[("timestamp", DESCENDING), ("_id", DESCENDING)],
            limit=limit,
        )
        return [Message.from_document(d) for d in docs]
