from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from chatcore.models.message import MessageDocument
from chatcore.utils.conversation_key import derive_key

TOMBSTONE = "This message was deleted"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ]


class Message(BaseModel):

    id: str
    sender_id: str
    receiver_id: str
    content: str
    type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.SENT
    timestamp: datetime
    is_deleted: bool = False

    @property
    def conversation_key(self) -> str:
        return derive_key(self.sender_id, self.receiver_id)

    def to_document(self) -> MessageDocument:
        return {
            "_id": self.id,
            "conversation_key": self.conversation_key,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "type": self.type.value,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "is_deleted": self.is_deleted,
        }

    @classmethod
    def from_document(cls, doc: MessageDocument) -> "Message":
        return cls(
            id=doc["_id"],
            sender_id=doc["sender_id"],
            receiver_id=doc["receiver_id"],
            content=doc["content"],
            type=doc.get("type", MessageType.TEXT.value),
            status=doc.get("status", MessageStatus.SENT.value),
            timestamp=doc["timestamp"],
            is_deleted=doc.get("is_deleted", False),
        )
