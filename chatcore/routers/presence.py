from fastapi import APIRouter, Depends

from chatcore.dependencies import get_current_user_id, get_presence_service
from chatcore.schemas.commands import PresenceRequest
from chatcore.services.presence_service import PresenceService

router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str, service: PresenceService = Depends(get_presence_service)):
    state = await service.get_presence(user_id)
    return {"user_id": state.user_id, "online": state.is_online, "last_seen": state.last_seen}


@router.put("")
async def set_presence(body: PresenceRequest, current_user_id: str = Depends(get_current_user_id), service: PresenceService = Depends(get_presence_service)):
    state = await service.set_online(current_user_id, body.is_online)
    return {"user_id": state.user_id, "online": state.is_online, "last_seen": state.last_seen}
