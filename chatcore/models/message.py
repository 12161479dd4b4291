from datetime import datetime
from typing import TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    # query index only; always derived from the participants
    conversation_key: str
    sender_id: str
    receiver_id: str
    content: str
    type: str
    # sent -> delivered -> read
    status: str
    timestamp: datetime
    is_deleted: bool
