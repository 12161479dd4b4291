from datetime import datetime
from typing import List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    participant_ids: List[str]
    last_message_id: Optional[str]
    last_message_preview: Optional[str]
    last_message_sender_id: Optional[str]
    last_message_at: Optional[datetime]
    updated_at: datetime
    # per-user unread counters (user_id -> count)
    unread_count: dict[str, int]
