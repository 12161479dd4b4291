from typing import Optional


class ChatError(Exception):
    """Base class for errors raised by the messaging core."""


class ValidationError(ChatError, ValueError):
    """Bad input. Rejected synchronously and never queued."""


class NotFoundError(ChatError, LookupError):

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection} {doc_id!r} not found")
        self.collection = collection
        self.doc_id = doc_id


class ConnectivityError(ChatError):
    """The durable remote store cannot be reached."""


class InvalidTransitionError(ChatError):
    """A status regression or a second delete of the same message."""


class ForbiddenError(ChatError):
    """The acting user may not perform this change on the message."""


class ConflictError(ChatError):
    """Concurrent mutation of the same row detected by the transaction layer."""


class SubscriberOverflow(ChatError):
    """Raised to a subscriber that was dropped because its buffer filled up."""


class QueueStalled(ChatError):

    def __init__(self, op_id: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"offline queue stalled at operation {op_id}: {cause!r}")
        self.op_id = op_id
        self.cause = cause
