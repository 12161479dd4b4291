"""
Offline send queue.

Mutations that could not reach the remote store are kept here, in the order
they were issued, until a drain applies them. The log is written through to
storage on every enqueue and every successful replay, so a restart resumes
exactly where the previous process stopped.
"""
import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatcore.errors import NotFoundError, QueueStalled
from chatcore.schemas.offline import OfflineLog, OfflineOperation, OfflineOperationKind
from chatcore.utils.clock import utcnow

logger = logging.getLogger(__name__)


class QueueStorage(ABC):

    @abstractmethod
    def load(self) -> List[OfflineOperation]:
        pass

    @abstractmethod
    def save(self, operations: List[OfflineOperation]) -> None:
        pass


class MemoryQueueStorage(QueueStorage):

    def __init__(self) -> None:
        self._operations: List[OfflineOperation] = []

    def load(self) -> List[OfflineOperation]:
        return list(self._operations)

    def save(self, operations: List[OfflineOperation]) -> None:
        self._operations = list(operations)


class FileQueueStorage(QueueStorage):

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def load(self) -> List[OfflineOperation]:
        if not self.path.exists():
            return []
        return OfflineLog.model_validate_json(self.path.read_text(encoding="utf-8")).operations

    def save(self, operations: List[OfflineOperation]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(OfflineLog(operations=operations).model_dump_json(), encoding="utf-8")
        os.replace(tmp, self.path)


class OfflineQueue:

    def __init__(self, storage: Optional[QueueStorage] = None) -> None:
        self._storage = storage or MemoryQueueStorage()
        self._operations: List[OfflineOperation] = self._storage.load()
        self._drain_lock = asyncio.Lock()
        if self._operations:
            logger.info("Restored %d queued operations", len(self._operations))

    def __len__(self) -> int:
        return len(self._operations)

    def pending(self) -> List[OfflineOperation]:
        return list(self._operations)

    def enqueue(self, kind: OfflineOperationKind, payload: Dict[str, Any]) -> OfflineOperation:
        operation = OfflineOperation(op_id=uuid.uuid4().hex, kind=kind, payload=payload, enqueued_at=utcnow())
        self._operations.append(operation)
        self._storage.save(self._operations)
        logger.info("Queued %s operation %s (%d pending)", kind.value, operation.op_id, len(self._operations))
        return operation

    def skip(self, op_id: str) -> OfflineOperation:
        for index, operation in enumerate(self._operations):
            if operation.op_id == op_id:
                del self._operations[index]
                self._storage.save(self._operations)
                logger.warning("Skipped queued %s operation %s", operation.kind.value, op_id)
                return operation
        raise NotFoundError("offline operation", op_id)

    def _discard(self, op_id: str) -> None:
        self._operations = [op for op in self._operations if op.op_id != op_id]
        self._storage.save(self._operations)

    async def drain(self, apply: Callable[[OfflineOperation], Awaitable[Any]]) -> int:
        """
        Replay queued operations oldest first.

        An operation leaves the queue only after ``apply`` returns. The first
        failure stops the replay and raises QueueStalled; it and everything
        behind it stay queued.
        """
        applied = 0
        async with self._drain_lock:
            while self._operations:
                operation = self._operations[0]
                try:
                    await apply(operation)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("Replay stalled at %s operation %s: %r", operation.kind.value, operation.op_id, exc)
                    raise QueueStalled(operation.op_id, exc) from exc
                self._discard(operation.op_id)
                applied += 1
        if applied:
            logger.info("Replayed %d queued operations", applied)
        return applied
