from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from chatcore.models.conversation import ConversationDocument


class Conversation(BaseModel):

    conversation_key: str
    participant_ids: List[str]
    last_message_id: Optional[str] = None
    last_message_preview: Optional[str] = None
    last_message_sender_id: Optional[str] = None
    last_message_at: Optional[datetime] = None
    updated_at: datetime
    unread_count: Dict[str, int] = Field(default_factory=dict)

    def unread_for(self, user_id: str) -> int:
        return self.unread_count.get(user_id, 0)

    @classmethod
    def from_document(cls, doc: ConversationDocument) -> "Conversation":
        return cls(
            conversation_key=doc["_id"],
            participant_ids=list(doc.get("participant_ids", [])),
            last_message_id=doc.get("last_message_id"),
            last_message_preview=doc.get("last_message_preview"),
            last_message_sender_id=doc.get("last_message_sender_id"),
            last_message_at=doc.get("last_message_at"),
            updated_at=doc["updated_at"],
            unread_count=dict(doc.get("unread_count") or {}),
        )
