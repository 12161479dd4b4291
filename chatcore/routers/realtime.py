import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from chatcore.container import ChatCore
from chatcore.dependencies import USER_HEADER, get_ws_core
from chatcore.errors import ChatError, SubscriberOverflow, ValidationError
from chatcore.schemas.message import MessageStatus
from chatcore.services.delivery_hub import Subscription
from chatcore.utils.conversation_key import parse_key, validate_user_id

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

# close codes
UNAUTHORIZED = 4401
FORBIDDEN = 4403
TRY_AGAIN_LATER = 1013


def can_subscribe(topic: str, user_id: str) -> bool:
    kind, _, target = topic.partition(":")
    if not target:
        return False
    if kind in ("conversation", "typing"):
        try:
            return user_id in parse_key(target)
        except ValidationError:
            return False
    if kind == "userConversations":
        return target == user_id
    return kind == "presence"


async def handle_command(core: ChatCore, user_id: str, msg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not isinstance(msg, dict):
        raise ValidationError("Commands must be JSON objects")
    kind = msg.get("type")
    if kind == "send":
        message = await core.chat.send(user_id, msg.get("to", ""), msg.get("content", ""), msg.get("message_type", "text"))
        return {
            "type": "ack",
            "message_id": message.id,
            "conversation_key": message.conversation_key,
            "client_message_id": msg.get("client_message_id"),
        }
    if kind in ("typing_start", "typing_stop"):
        await core.presence.set_typing(msg.get("conversation_key", ""), user_id, kind == "typing_start")
        return None
    if kind in ("delivered", "seen"):
        status = MessageStatus.DELIVERED if kind == "delivered" else MessageStatus.READ
        await core.chat.update_status(msg.get("message_id", ""), status, actor_id=user_id)
        return None
    if kind == "read_all":
        updated = await core.chat.mark_all_read(msg.get("conversation_key", ""), user_id)
        return {"type": "read_all", "updated": updated}
    raise ValidationError(f"Unknown command {kind!r}")


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    try:
        async for event in subscription:
            await websocket.send_text(json.dumps({"topic": subscription.topic, "event": event.model_dump(mode="json")}))
    except SubscriberOverflow:
        logger.warning("Closing socket that fell behind on %s", subscription.topic)
        await websocket.close(code=TRY_AGAIN_LATER)


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, core: ChatCore = Depends(get_ws_core)):
    raw_user = websocket.headers.get(USER_HEADER) or websocket.query_params.get("user_id")
    if not raw_user:
        await websocket.close(code=UNAUTHORIZED)
        return
    try:
        user_id = validate_user_id(raw_user)
    except ValidationError:
        await websocket.close(code=UNAUTHORIZED)
        return
    topics = [t for t in (websocket.query_params.get("topics") or "").split(",") if t]
    if not topics or not all(can_subscribe(t, user_id) for t in topics):
        await websocket.close(code=FORBIDDEN)
        return

    await websocket.accept()
    subscriptions: List[Subscription] = [core.hub.subscribe(t) for t in topics]
    pumps = [asyncio.create_task(_pump(websocket, s)) for s in subscriptions]
    await websocket.send_text(json.dumps({"type": "subscribed", "topics": topics}))
    try:
        while True:
            data = await websocket.receive_text()
            try:
                reply = await handle_command(core, user_id, json.loads(data))
            except json.JSONDecodeError:
                reply = {"type": "error", "detail": "Invalid message payload"}
            except ChatError as exc:
                reply = {"type": "error", "detail": str(exc)}
            if reply is not None:
                await websocket.send_text(json.dumps(reply))
    except WebSocketDisconnect:
        pass
    finally:
        for subscription in subscriptions:
            subscription.cancel()
        for task in pumps:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
