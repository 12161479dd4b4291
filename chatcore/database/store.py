"""
Remote store capability.

The core treats the durable store as a keyed document store: documents live in
named collections under a string ``_id``, can be fetched by key or by a simple
query, and are written inside transactions so that a message and its
conversation row change together or not at all.

Two implementations exist and are chosen when the application is composed:
``InMemoryRemoteStore`` (development, tests) and ``MongoRemoteStore``.
Implementations raise ``ConnectivityError`` when the backend cannot be
reached and ``ConflictError`` when a transaction loses a write race.
"""
from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, Dict, List, Optional, Sequence, Tuple

Document = Dict[str, Any]
Query = Dict[str, Any]
Sort = Sequence[Tuple[str, int]]


class StoreTransaction(ABC):

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def find(self, collection: str, query: Query, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Document]:
        pass

    @abstractmethod
    async def insert(self, collection: str, doc: Document) -> None:
        pass

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
        set_on_insert: Optional[Dict[str, Any]] = None,
        upsert: bool = False,
    ) -> None:
        """Apply ``$set``/``$inc`` style changes; dotted paths address nested fields."""


class RemoteStore(ABC):

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def find(self, collection: str, query: Query, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Document]:
        pass

    @abstractmethod
    async def upsert(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Single-document last-write-wins write outside any transaction."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StoreTransaction]:
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Raise ConnectivityError when the store is unreachable."""

    async def prepare(self) -> None:
        """One-time setup such as index creation."""
        return

    async def close(self) -> None:
        return
