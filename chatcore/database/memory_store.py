import copy
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from chatcore.database.store import Document, Query, RemoteStore, Sort, StoreTransaction
from chatcore.errors import ConflictError, ConnectivityError, NotFoundError

logger = logging.getLogger(__name__)

_MISSING = object()


def _get_path(doc: Document, path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set_path(doc: Document, path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    target = doc
    for part in parents:
        target = target.setdefault(part, {})
    target[leaf] = value


def _matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$ne":
                if value is not _MISSING and _matches_condition(value, operand):
                    return False
            elif op == "$in":
                if not any(_matches_condition(value, o) for o in operand):
                    return False
            elif value is _MISSING:
                return False
            elif op == "$lt" and not value < operand:
                return False
            elif op == "$lte" and not value <= operand:
                return False
            elif op == "$gt" and not value > operand:
                return False
            elif op == "$gte" and not value >= operand:
                return False
            elif op not in ("$lt", "$lte", "$gt", "$gte"):
                raise ValueError(f"Unsupported query operator {op}")
        return True
    if isinstance(value, list) and not isinstance(condition, list):
        return condition in value
    return value is not _MISSING and value == condition


def matches(doc: Document, query: Query) -> bool:
    for field, condition in query.items():
        if field == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif not _matches_condition(_get_path(doc, field), condition):
            return False
    return True


def sort_documents(docs: List[Document], sort: Optional[Sort]) -> List[Document]:
    ordered = list(docs)
    # stable sorts applied from the least significant key
    for field, direction in reversed(list(sort or [])):
        ordered.sort(key=lambda d: _get_path(d, field), reverse=direction < 0)
    return ordered


def apply_update(doc: Document, set_fields: Optional[Dict[str, Any]], inc: Optional[Dict[str, int]]) -> None:
    for path, value in (set_fields or {}).items():
        _set_path(doc, path, copy.deepcopy(value))
    for path, amount in (inc or {}).items():
        current = _get_path(doc, path)
        _set_path(doc, path, (0 if current is _MISSING else current) + amount)


class _MemoryTransaction(StoreTransaction):

    def __init__(self, store: "InMemoryRemoteStore") -> None:
        self._store = store
        self._staged: Dict[Tuple[str, str], Document] = {}
        self._seen_versions: Dict[Tuple[str, str], int] = {}
        self._writes = 0

    def _track(self, collection: str, doc_id: str) -> None:
        key = (collection, doc_id)
        if key not in self._seen_versions:
            self._seen_versions[key] = self._store._versions.get(key, 0)

    def _current(self, collection: str, doc_id: str) -> Optional[Document]:
        key = (collection, doc_id)
        if key in self._staged:
            return self._staged[key]
        return self._store._collections.get(collection, {}).get(doc_id)

    def _count_write(self) -> None:
        self._writes += 1
        self._store._maybe_fail(self._writes)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._store._check_reachable()
        self._track(collection, doc_id)
        doc = self._current(collection, doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(self, collection: str, query: Query, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Document]:
        self._store._check_reachable()
        ids = set(self._store._collections.get(collection, {}))
        ids.update(doc_id for (col, doc_id) in self._staged if col == collection)
        docs = [d for d in (self._current(collection, i) for i in ids) if d is not None and matches(d, query)]
        docs = sort_documents(docs, sort)[:limit]
        for d in docs:
            self._track(collection, d["_id"])
        return copy.deepcopy(docs)

    async def insert(self, collection: str, doc: Document) -> None:
        self._store._check_reachable()
        self._track(collection, doc["_id"])
        if self._current(collection, doc["_id"]) is not None:
            raise ConflictError(f"{collection} {doc['_id']!r} already exists")
        self._count_write()
        self._staged[(collection, doc["_id"])] = copy.deepcopy(doc)

    async def update(
        self,
        collection: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        inc: Optional[Dict[str, int]] = None,
        set_on_insert: Optional[Dict[str, Any]] = None,
        upsert: bool = False,
    ) -> None:
        self._store._check_reachable()
        self._track(collection, doc_id)
        existing = self._current(collection, doc_id)
        if existing is None:
            if not upsert:
                raise NotFoundError(collection, doc_id)
            doc: Document = {"_id": doc_id}
            apply_update(doc, set_on_insert, None)
        else:
            doc = copy.deepcopy(existing)
        apply_update(doc, set_fields, inc)
        self._count_write()
        self._staged[(collection, doc_id)] = doc

    def commit(self) -> None:
        self._store._check_reachable()
        for key, version in self._seen_versions.items():
            if self._store._versions.get(key, 0) != version:
                raise ConflictError(f"{key[0]} {key[1]!r} was modified concurrently")
        for (collection, doc_id), doc in self._staged.items():
            self._store._collections.setdefault(collection, {})[doc_id] = doc
            self._store._versions[(collection, doc_id)] = self._store._versions.get((collection, doc_id), 0) + 1


class InMemoryRemoteStore(RemoteStore):
    """
    Process-local document store.

    Transactions stage their writes and apply them in one step on commit, so a
    failure at any point before commit leaves the store untouched. Optimistic
    version checks turn lost updates into ConflictError. ``reachable`` can be
    flipped to simulate losing the connection to the backend.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._versions: Dict[Tuple[str, str], int] = {}
        self.reachable = True
        self._fail_at_write: Optional[int] = None
        self._fail_with: Optional[Exception] = None

    def set_reachable(self, reachable: bool) -> None:
        logger.info("In-memory store reachable=%s", reachable)
        self.reachable = reachable

    def fail_next_transaction(self, at_write: int, error: Optional[Exception] = None) -> None:
        """Make the next transaction raise when it stages its ``at_write``-th write."""
        self._fail_at_write = at_write
        self._fail_with = error or ConnectivityError("connection lost mid-transaction")

    def _maybe_fail(self, write_number: int) -> None:
        if self._fail_at_write is not None and write_number >= self._fail_at_write:
            error = self._fail_with
            self._fail_at_write = None
            self._fail_with = None
            raise error

    def _check_reachable(self) -> None:
        if not self.reachable:
            raise ConnectivityError("remote store unreachable")

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._check_reachable()
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(self, collection: str, query: Query, sort: Optional[Sort] = None, limit: Optional[int] = None) -> List[Document]:
        self._check_reachable()
        docs = [d for d in self._collections.get(collection, {}).values() if matches(d, query)]
        return copy.deepcopy(sort_documents(docs, sort)[:limit])

    async def upsert(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._check_reachable()
        doc = self._collections.setdefault(collection, {}).setdefault(doc_id, {"_id": doc_id})
        apply_update(doc, fields, None)
        self._versions[(collection, doc_id)] = self._versions.get((collection, doc_id), 0) + 1

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        self._check_reachable()
        txn = _MemoryTransaction(self)
        yield txn
        txn.commit()

    async def ping(self) -> None:
        self._check_reachable()
