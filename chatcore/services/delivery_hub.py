"""
In-process fan-out of core events.

Every topic keeps a list of live subscriptions. Publishing appends the event to
each subscription's bounded buffer without awaiting anything, so a slow
consumer never holds up the publisher or the other consumers; a consumer whose
buffer is full is dropped instead of the event.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from chatcore.errors import SubscriberOverflow
from chatcore.schemas.events import Event
from chatcore.utils.realtime_bus import NoopBus, RealtimeBus

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 256


def conversation_topic(conversation_key: str) -> str:
    return f"conversation:{conversation_key}"


def user_conversations_topic(user_id: str) -> str:
    return f"userConversations:{user_id}"


def typing_topic(conversation_key: str) -> str:
    return f"typing:{conversation_key}"


def presence_topic(user_id: str) -> str:
    return f"presence:{user_id}"


_CLOSED = object()
_OVERFLOWED = object()


class Subscription:

    def __init__(self, hub: "DeliveryHub", topic: str, buffer_size: int) -> None:
        self.topic = topic
        self._hub = hub
        # one extra slot so the end-of-stream marker always fits
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size + 1)
        self._buffer_size = buffer_size
        self._finished = False
        self.overflowed = False

    @property
    def active(self) -> bool:
        return not self._finished

    def _offer(self, event: Event) -> bool:
        if self._finished:
            return False
        if self._queue.qsize() >= self._buffer_size:
            self.overflowed = True
            self._finish(_OVERFLOWED)
            return False
        self._queue.put_nowait(event)
        return True

    def _finish(self, marker: object) -> None:
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(marker)

    def cancel(self) -> None:
        self._hub._remove(self)
        self._finish(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if item is _OVERFLOWED:
            raise SubscriberOverflow(f"subscriber on {self.topic} fell {self._buffer_size} events behind")
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.cancel()


class DeliveryHub:

    def __init__(self, bus: Optional[RealtimeBus] = None, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self._bus = bus or NoopBus()
        self._buffer_size = buffer_size
        self._topics: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, buffer_size: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, topic, buffer_size or self._buffer_size)
        self._topics.setdefault(topic, []).append(subscription)
        return subscription

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, []))

    def publish(self, topic: str, event: Event) -> int:
        """Deliver locally and mirror to the realtime bus. Returns the local delivery count."""
        delivered = self.publish_local(topic, event)
        self._bus.forward(topic, event)
        return delivered

    def publish_local(self, topic: str, event: Event) -> int:
        delivered = 0
        for subscription in list(self._topics.get(topic, [])):
            if subscription._offer(event):
                delivered += 1
            elif subscription.overflowed:
                logger.warning("Dropping slow subscriber on %s", topic)
                self._remove(subscription)
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._topics.get(subscription.topic)
        if not subscribers:
            return
        try:
            subscribers.remove(subscription)
        except ValueError:
            pass
        if not subscribers:
            del self._topics[subscription.topic]

    def close(self) -> None:
        for subscribers in list(self._topics.values()):
            for subscription in list(subscribers):
                subscription.cancel()
