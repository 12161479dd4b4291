from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, WebSocket

from chatcore.container import ChatCore
from chatcore.errors import ValidationError
from chatcore.services.chat_service import ChatService
from chatcore.services.presence_service import PresenceService
from chatcore.utils.conversation_key import parse_key, validate_user_id

USER_HEADER = "X-User-Id"


def get_core(request: Request) -> ChatCore:
    return request.app.state.core


def get_ws_core(websocket: WebSocket) -> ChatCore:
    return websocket.app.state.core


def get_chat_service(core: ChatCore = Depends(get_core)) -> ChatService:
    return core.chat


def get_presence_service(core: ChatCore = Depends(get_core)) -> PresenceService:
    return core.presence


def resolve_user_id(raw: Optional[str]) -> str:
    """The upstream identity layer authenticates the caller and forwards its id in a header."""
    if not raw:
        raise HTTPException(status_code=401, detail=f"Missing {USER_HEADER} header")
    try:
        return validate_user_id(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    return resolve_user_id(x_user_id)


def require_participant(conversation_key: str, user_id: str) -> None:
    try:
        participants = parse_key(conversation_key)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if user_id not in participants:
        raise HTTPException(status_code=403, detail="Not a participant of this conversation")
