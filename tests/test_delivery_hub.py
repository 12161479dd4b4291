import asyncio

import pytest

from chatcore.errors import SubscriberOverflow
from chatcore.schemas.events import TypingChanged
from chatcore.schemas.presence import TypingState
from chatcore.services.delivery_hub import DeliveryHub, typing_topic
from chatcore.utils.clock import utcnow

TOPIC = typing_topic("alice_bob")


def typing_event(n: int) -> TypingChanged:
    return TypingChanged(typing=TypingState(conversation_key="alice_bob", user_id=f"u{n}", is_typing=True, updated_at=utcnow()))


class TestFanOut:

    async def test_every_subscriber_gets_events_in_order(self, take):
        hub = DeliveryHub()
        subs = [hub.subscribe(TOPIC) for _ in range(3)]
        events = [typing_event(i) for i in range(5)]
        for event in events:
            hub.publish(TOPIC, event)
        for sub in subs:
            assert await take(sub, 5) == events

    async def test_no_history_for_late_subscribers(self, take):
        hub = DeliveryHub()
        hub.publish(TOPIC, typing_event(0))
        sub = hub.subscribe(TOPIC)
        hub.publish(TOPIC, typing_event(1))
        [event] = await take(sub)
        assert event.typing.user_id == "u1"

    async def test_topics_are_isolated(self):
        hub = DeliveryHub()
        sub = hub.subscribe(typing_topic("carol_dave"))
        assert hub.publish(TOPIC, typing_event(0)) == 0
        sub.cancel()
        assert [e async for e in sub] == []


class TestBackpressure:

    async def test_overflow_drops_only_the_slow_subscriber(self, take):
        hub = DeliveryHub(buffer_size=2)
        slow = hub.subscribe(TOPIC)
        fast = hub.subscribe(TOPIC, buffer_size=10)

        for i in range(3):
            hub.publish(TOPIC, typing_event(i))

        assert slow.overflowed and not slow.active
        assert hub.subscriber_count(TOPIC) == 1
        assert len(await take(fast, 3)) == 3
        assert len(await take(slow, 2)) == 2
        with pytest.raises(SubscriberOverflow):
            await take(slow)

    async def test_publish_does_not_wait_for_consumers(self):
        hub = DeliveryHub(buffer_size=1000)
        hub.subscribe(TOPIC)
        for i in range(500):
            hub.publish(TOPIC, typing_event(i))


class TestCancellation:

    async def test_cancel_leaves_others_running(self, take):
        hub = DeliveryHub()
        gone = hub.subscribe(TOPIC)
        stays = hub.subscribe(TOPIC)
        gone.cancel()
        hub.publish(TOPIC, typing_event(1))
        assert [e async for e in gone] == []
        assert len(await take(stays)) == 1

    async def test_context_manager_unsubscribes(self):
        hub = DeliveryHub()
        async with hub.subscribe(TOPIC):
            assert hub.subscriber_count(TOPIC) == 1
        assert hub.subscriber_count(TOPIC) == 0

    async def test_consumer_task_cancellation(self):
        hub = DeliveryHub()
        sub = hub.subscribe(TOPIC)

        async def consume():
            async for _ in sub:
                pass

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        other = hub.subscribe(TOPIC)
        assert hub.publish(TOPIC, typing_event(0)) == 2
        other.cancel()
