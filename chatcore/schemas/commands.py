from pydantic import BaseModel, Field

from chatcore.schemas.message import MessageStatus, MessageType


class SendMessageRequest(BaseModel):

    receiver_id: str
    content: str = Field(min_length=1)
    type: MessageType = MessageType.TEXT


class StatusUpdateRequest(BaseModel):

    status: MessageStatus


class TypingRequest(BaseModel):

    is_typing: bool


class PresenceRequest(BaseModel):

    is_online: bool
