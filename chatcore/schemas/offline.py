from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class OfflineOperationKind(str, Enum):
    SEND = "send"
    MARK_READ = "mark_read"
    UPDATE_STATUS = "update_status"
    SET_TYPING = "set_typing"
    DELETE = "delete"


class OfflineOperation(BaseModel):

    op_id: str
    kind: OfflineOperationKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime


class OfflineLog(BaseModel):
    """On-disk shape of the offline queue: operations in enqueue order."""

    operations: List[OfflineOperation] = Field(default_factory=list)
