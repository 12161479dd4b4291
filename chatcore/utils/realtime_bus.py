import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, Optional, Set, Union

from pydantic import BaseModel

from chatcore.schemas.events import AnyEvent, Event

if TYPE_CHECKING:
    from chatcore.services.delivery_hub import DeliveryHub

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "chatcore:"


class BusEnvelope(BaseModel):

    origin: str
    topic: str
    event: AnyEvent


class RealtimeBus:
    """Mirrors hub events to other processes. The base class keeps delivery local."""

    enabled = False

    def forward(self, topic: str, event: Event) -> None:
        return

    async def run_relay(self, hub: "DeliveryHub") -> None:
        return

    async def close(self) -> None:
        return


class NoopBus(RealtimeBus):
    pass


class RedisBus(RealtimeBus):

    enabled = True

    def __init__(self, client: Any, origin: Optional[str] = None) -> None:
        self._redis = client
        self.origin = origin or uuid.uuid4().hex
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_url(cls, url: str) -> "RedisBus":
        import redis.asyncio as redis

        return cls(redis.from_url(url))

    def forward(self, topic: str, event: Event) -> None:
        envelope = BusEnvelope(origin=self.origin, topic=topic, event=event)
        task = asyncio.ensure_future(self.publish(CHANNEL_PREFIX + topic, envelope.model_dump_json()))
        self._pending.add(task)
        task.add_done_callback(self._forwarded)

    def _forwarded(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Redis publish failed: %r", task.exception())

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def handle_message(self, hub: "DeliveryHub", data: Union[str, bytes]) -> bool:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        envelope = BusEnvelope.model_validate_json(data)
        if envelope.origin == self.origin:
            return False
        hub.publish_local(envelope.topic, envelope.event)
        return True

    async def run_relay(self, hub: "DeliveryHub") -> None:
        pubsub = self._redis.pubsub()
        await pubsub.psubscribe(CHANNEL_PREFIX + "*")
        try:
            while True:
                try:
                    msg: Optional[Dict[str, Any]] = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if msg and msg.get("type") == "pmessage":
                        self.handle_message(hub, msg.get("data"))
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Redis relay failed to handle a message")
                    await asyncio.sleep(0.5)
        finally:
            await pubsub.punsubscribe(CHANNEL_PREFIX + "*")
            await pubsub.aclose()

    async def close(self) -> None:
        await self.flush()
        await self._redis.aclose()
