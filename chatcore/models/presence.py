from datetime import datetime
from typing import TypedDict


class PresenceDocument(TypedDict, total=False):
    _id: str
    is_online: bool
    last_seen: datetime


class TypingDocument(TypedDict, total=False):
    # conversation key + separator + user id
    _id: str
    conversation_key: str
    user_id: str
    is_typing: bool
    updated_at: datetime
