from typing import Optional, Union

from fastapi import APIRouter, Depends, Query

from chatcore.dependencies import get_chat_service, get_current_user_id, get_presence_service, require_participant
from chatcore.schemas.commands import TypingRequest
from chatcore.services.chat_service import ChatService
from chatcore.services.presence_service import PresenceService

router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("")
async def list_conversations(limit: int = Query(20, ge=1, le=100), current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    items = await service.list_for_user(current_user_id, limit=limit)
    return {"items": items}


@router.get("/{conversation_key}/messages")
async def list_messages(
    conversation_key: str,
    limit: Optional[int] = Query(None, ge=1),
    before: Optional[str] = None,
    current_user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
):
    require_participant(conversation_key, current_user_id)
    # cursor is either a message id or epoch milliseconds
    cursor: Union[str, int, None] = int(before) if before and before.isdigit() else before
    limit = service.page_limit(limit)
    messages = await service.page(conversation_key, limit=limit, before=cursor)
    next_cursor = messages[-1].id if len(messages) == limit else None
    return {"items": messages, "next_cursor": next_cursor}


@router.post("/{conversation_key}/read")
async def mark_read(conversation_key: str, current_user_id: str = Depends(get_current_user_id), service: ChatService = Depends(get_chat_service)):
    require_participant(conversation_key, current_user_id)
    count = await service.mark_all_read(conversation_key, current_user_id)
    return {"updated": count}


@router.put("/{conversation_key}/typing")
async def set_typing(conversation_key: str, body: TypingRequest, current_user_id: str = Depends(get_current_user_id), presence: PresenceService = Depends(get_presence_service)):
    require_participant(conversation_key, current_user_id)
    state = await presence.set_typing(conversation_key, current_user_id, body.is_typing)
    return {"typing": state}
