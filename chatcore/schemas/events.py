# Events fanned out by the delivery hub.
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from chatcore.schemas.conversation import Conversation
from chatcore.schemas.message import Message, MessageStatus
from chatcore.schemas.presence import PresenceState, TypingState


class Event(BaseModel):
    pass


class MessageCreated(Event):
    kind: Literal["message_created"] = "message_created"
    message: Message


class MessageStatusChanged(Event):
    kind: Literal["message_status_changed"] = "message_status_changed"
    message_id: str
    conversation_key: str
    previous: MessageStatus
    status: MessageStatus


class MessageDeleted(Event):
    kind: Literal["message_deleted"] = "message_deleted"
    message: Message


class ConversationUpdated(Event):
    kind: Literal["conversation_updated"] = "conversation_updated"
    conversation: Conversation


class PresenceChanged(Event):
    kind: Literal["presence_changed"] = "presence_changed"
    presence: PresenceState


class TypingChanged(Event):
    kind: Literal["typing_changed"] = "typing_changed"
    typing: TypingState
    expired: bool = False

    @property
    def is_typing(self) -> bool:
        return self.typing.is_typing


AnyEvent = Annotated[
    Union[
        MessageCreated,
        MessageStatusChanged,
        MessageDeleted,
        ConversationUpdated,
        PresenceChanged,
        TypingChanged,
    ],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter = TypeAdapter(AnyEvent)


def parse_event(data: Union[str, bytes]) -> Event:
    return _event_adapter.validate_json(data)


def dump_event(event: Event) -> str:
    return event.model_dump_json()
