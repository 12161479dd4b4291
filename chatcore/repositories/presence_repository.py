from typing import Optional

from chatcore.database.store import RemoteStore
from chatcore.models.presence import PresenceDocument, TypingDocument
from chatcore.schemas.presence import PresenceState, TypingState
from chatcore.utils.conversation_key import SEPARATOR


class PresenceRepository:

    presence_collection = "presence"
    typing_collection = "typing_status"

    def __init__(self, store: RemoteStore) -> None:
        self._store = store

    async def save_presence(self, state: PresenceState) -> None:
        fields: PresenceDocument = {"is_online": state.is_online, "last_seen": state.last_seen}
        await self._store.upsert(self.presence_collection, state.user_id, dict(fields))

    async def get_presence(self, user_id: str) -> Optional[PresenceState]:
        doc: Optional[PresenceDocument] = await self._store.get(self.presence_collection, user_id)
        if not doc:
            return None
        return PresenceState(user_id=user_id, is_online=doc.get("is_online", False), last_seen=doc.get("last_seen"))

    async def save_typing(self, state: TypingState) -> None:
        fields: TypingDocument = {
            "conversation_key": state.conversation_key,
            "user_id": state.user_id,
            "is_typing": state.is_typing,
            "updated_at": state.updated_at,
        }
        await self._store.upsert(self.typing_collection, f"{state.conversation_key}{SEPARATOR}{state.user_id}", dict(fields))
