from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PresenceState(BaseModel):

    user_id: str
    is_online: bool = False
    last_seen: Optional[datetime] = None


class TypingState(BaseModel):

    conversation_key: str
    user_id: str
    is_typing: bool
    updated_at: datetime
