import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from chatcore.database.store import Document, Query, RemoteStore, Sort, StoreTransaction
from chatcore.errors import ConflictError, ConnectivityError, NotFoundError

logger = logging.getLogger(__name__)

WRITE_CONFLICT = 112


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except ConnectionFailure as exc:
        raise ConnectivityError(str(exc)) from exc
    except DuplicateKeyError as exc:
        raise ConflictError(str(exc)) from exc
    except PyMongoError as exc:
        transient = exc.has_error_label("TransientTransactionError")
        if transient or (isinstance(exc, OperationFailure) and exc.code == WRITE_CONFLICT):
            raise ConflictError(str(exc)) from exc
        raise


def _update_operators(set_fields, inc, set_on_insert) -> Dict[str, Any]:
    operators: Dict[str, Any] = {}
    if set_fields:
        operators["$set"] = set_fields
    if inc:
        operators["$inc"] = inc
    if set_on_insert:
        operators["$setOnInsert"] = set_on_insert
    return operators


async def _find(db: AsyncIOMotorDatabase, collection: str, query: Query, sort: Optional[Sort], limit: Optional[int], session=None) -> List[Document]:
    cursor = db[collection].find(query, session=session)
    if sort:
        cursor = cursor.sort(list(sort))
    if limit:
        cursor = cursor.limit(limit)
    return await cursor.to_list(length=limit)


class _MongoTransaction(StoreTransaction):

    def __init__(self, db: AsyncIOMotorDatabase, session: AsyncIOMotorClientSession) -> None:
        self._db = db
        self._session = session

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with _translate_errors():
            return await self._db[collection].find_one({"_id": doc_id}, session=self._session)

    async def find(self, collection: str, query: Query, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Document]:
        with _translate_errors():
            return await _find(self._db, collection, query, sort, limit, session=self._session)

    async def insert(self, collection: str, doc: Document) -> None:
        with _translate_errors():
            await self._db[collection].insert_one(doc, session=self._session)

    async def update(
        self,
        collection: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
        set_on_insert: Optional[Dict[str, Any]] = None,
        upsert: bool = False,
    ) -> None:
        with _translate_errors():
            result = await self._db[collection].update_one(
                {"_id": doc_id},
                _update_operators(set_fields, inc, set_on_insert),
                upsert=upsert,
                session=self._session,
            )
        if not upsert and not result.matched_count:
            raise NotFoundError(collection, doc_id)


class MongoRemoteStore(RemoteStore):
    """MongoDB-backed store. Transactions need a replica set or sharded cluster."""

    def __init__(self, client: AsyncIOMotorClient, db_name: str) -> None:
        self._client = client
        self._db = client[db_name]

    @classmethod
    def from_url(cls, url: str, db_name: str) -> "MongoRemoteStore":
        return cls(AsyncIOMotorClient(url, serverSelectionTimeoutMS=5000, tz_aware=True), db_name)

    async def prepare(self) -> None:
        with _translate_errors():
            # one message per conversation per millisecond keeps the timestamp cursor exact
            await self._db["messages"].create_index(
                [("conversation_key", ASCENDING), ("timestamp", DESCENDING)], unique=True
            )
            await self._db["messages"].create_index([("receiver_id", ASCENDING), ("status", ASCENDING)])
            await self._db["conversations"].create_index([("participant_ids", ASCENDING)])
            await self._db["conversations"].create_index([("updated_at", DESCENDING)])

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with _translate_errors():
            return await self._db[collection].find_one({"_id": doc_id})

    async def find(self, collection: str, query: Query, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Document]:
        with _translate_errors():
            return await _find(self._db, collection, query, sort, limit)

    async def upsert(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        with _translate_errors():
            await self._db[collection].update_one({"_id": doc_id}, {"$set": fields}, upsert=True)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        with _translate_errors():
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    yield _MongoTransaction(self._db, session)

    async def ping(self) -> None:
        with _translate_errors():
            await self._client.admin.command("ping")

    async def close(self) -> None:
        self._client.close()
