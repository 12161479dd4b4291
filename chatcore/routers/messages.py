from fastapi import APIRouter, Depends, HTTPException

from chatcore.dependencies import get_chat_service, get_current_user_id
from chatcore.schemas.commands import SendMessageRequest, StatusUpdateRequest
from chatcore.services.chat_service import ChatService

router = APIRouter(prefix="/messages", tags=["chat"])


@router.post("", status_code=201)
async def send_message(body: SendMessageRequest, current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    message = await service.send(current_user_id, body.receiver_id, body.content, body.type)
    return {"message": message, "conversation_key": message.conversation_key}


@router.get("/{message_id}")
async def get_message(message_id: str, current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    message = await service.get(message_id)
    if current_user_id not in (message.sender_id, message.receiver_id):
        raise HTTPException(status_code=404, detail="Message not found")
    return {"message": message}


@router.post("/{message_id}/status")
async def update_status(message_id: str, body: StatusUpdateRequest, current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    # Only the receiver reports delivery and reads; the service checks it,
    # also when a queued update is replayed.
    updated = await service.update_status(message_id, body.status, actor_id=current_user_id)
    return {"message": updated, "queued": updated is None}


@router.delete("/{message_id}")
async def delete_message(message_id: str, current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    deleted = await service.soft_delete(message_id, actor_id=current_user_id)
    return {"message": deleted, "queued": deleted is None}
