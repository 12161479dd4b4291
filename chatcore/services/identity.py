import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional

from pydantic import BaseModel

from chatcore.utils.conversation_key import validate_user_id


class AuthChange(BaseModel):

    signed_in: bool
    user_id: Optional[str] = None


class IdentityProvider(ABC):

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        pass

    @abstractmethod
    def auth_changes(self) -> AsyncIterator[AuthChange]:
        pass


class LocalIdentityProvider(IdentityProvider):
    """Identity held in-process, for embedding the core in a single-user client."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        self._user_id = validate_user_id(user_id) if user_id else None
        self._listeners: List[asyncio.Queue] = []

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        self._user_id = validate_user_id(user_id)
        self._emit(AuthChange(signed_in=True, user_id=user_id))

    def sign_out(self) -> None:
        user_id, self._user_id = self._user_id, None
        self._emit(AuthChange(signed_in=False, user_id=user_id))

    def _emit(self, change: AuthChange) -> None:
        for listener in list(self._listeners):
            listener.put_nowait(change)

    async def auth_changes(self) -> AsyncIterator[AuthChange]:
        listener: asyncio.Queue = asyncio.Queue()
        self._listeners.append(listener)
        try:
            while True:
                yield await listener.get()
        finally:
            self._listeners.remove(listener)
