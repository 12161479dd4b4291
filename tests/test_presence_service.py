import asyncio
from datetime import timedelta

import pytest

from chatcore.config import Settings
from chatcore.errors import ValidationError
from chatcore.repositories.presence_repository import PresenceRepository
from chatcore.schemas.events import PresenceChanged, TypingChanged
from chatcore.schemas.offline import OfflineOperationKind
from chatcore.services.delivery_hub import DeliveryHub, presence_topic, typing_topic
from chatcore.services.offline_queue import OfflineQueue
from chatcore.services.presence_service import PresenceService
from chatcore.utils.clock import utcnow
from chatcore.utils.conversation_key import derive_key

KEY = derive_key("alice", "bob")


@pytest.fixture
async def signaler(store):
    service = PresenceService(PresenceRepository(store), DeliveryHub(), OfflineQueue(), typing_timeout=0.2)
    yield service
    await service.close()


class TestPresence:

    async def test_publishes_and_persists(self, core, store, hub, take):
        sub = hub.subscribe(presence_topic("alice"))
        state = await core.presence.set_online("alice", True)
        [event] = await take(sub)
        assert isinstance(event, PresenceChanged)
        assert event.presence == state
        assert (await store.get("presence", "alice"))["is_online"] is True

    async def test_last_write_wins(self, core):
        await core.presence.set_online("alice", True)
        await core.presence.set_online("alice", False)
        state = await core.presence.get_presence("alice")
        assert state.is_online is False
        assert state.last_seen is not None

    async def test_unknown_user_reads_stored_or_offline(self, core, store):
        assert (await core.presence.get_presence("zoe")).is_online is False
        await store.upsert("presence", "yan", {"is_online": True, "last_seen": utcnow()})
        assert (await core.presence.get_presence("yan")).is_online is True

    async def test_kept_locally_while_offline_then_flushed(self, core, store):
        store.set_reachable(False)
        await core.presence.set_online("alice", True)
        assert (await core.presence.get_presence("alice")).is_online is True

        store.set_reachable(True)
        await core.connectivity.check()
        assert (await store.get("presence", "alice"))["is_online"] is True


class TestTyping:

    async def test_published_immediately(self, core, hub, take):
        sub = hub.subscribe(typing_topic(KEY))
        await core.presence.set_typing(KEY, "alice", True)
        [event] = await take(sub)
        assert isinstance(event, TypingChanged)
        assert event.is_typing and not event.expired
        assert core.presence.is_typing(KEY, "alice")

    async def test_auto_expires_without_refresh(self, core, hub, take):
        """A typing indicator nobody refreshes switches itself off."""
        sub = hub.subscribe(typing_topic(KEY))
        await core.presence.set_typing(KEY, "alice", True)
        started, stopped = await take(sub, 2)
        assert started.is_typing
        assert stopped.expired and not stopped.is_typing
        assert not core.presence.is_typing(KEY, "alice")

    async def test_refresh_postpones_expiry(self, signaler):
        await signaler.set_typing(KEY, "bob", True)
        await asyncio.sleep(0.12)
        await signaler.set_typing(KEY, "bob", True)
        await asyncio.sleep(0.12)
        assert signaler.is_typing(KEY, "bob")
        await asyncio.sleep(0.2)
        assert not signaler.is_typing(KEY, "bob")

    async def test_explicit_stop_cancels_timer(self, core, hub, take):
        sub = hub.subscribe(typing_topic(KEY))
        await core.presence.set_typing(KEY, "alice", True)
        await core.presence.set_typing(KEY, "alice", False)
        await asyncio.sleep(0.1)
        events = await take(sub, 2)
        assert [e.is_typing for e in events] == [True, False]
        sub.cancel()
        assert [e async for e in sub] == []

    async def test_default_window(self):
        assert 5 <= Settings().TYPING_TIMEOUT_SECONDS <= 10

    async def test_outsider_rejected(self, core):
        with pytest.raises(ValidationError):
            await core.presence.set_typing(KEY, "carol", True)

    async def test_queued_offline_and_replayed(self, core, store):
        store.set_reachable(False)
        await core.presence.set_typing(KEY, "alice", False)
        assert [op.kind for op in core.queue.pending()] == [OfflineOperationKind.SET_TYPING]

        store.set_reachable(True)
        await core.connectivity.drain()
        doc = await store.get("typing_status", f"{KEY}_alice")
        assert doc["is_typing"] is False

    async def test_expiry_queued_behind_offline_start(self, core, store, hub, take):
        """The automatic stop lands after the queued start, never before it."""
        sub = hub.subscribe(typing_topic(KEY))
        store.set_reachable(False)
        await core.presence.set_typing(KEY, "alice", True)
        store.set_reachable(True)

        started, stopped = await take(sub, 2)
        assert stopped.expired
        for _ in range(50):
            if len(core.queue) == 2:
                break
            await asyncio.sleep(0.01)
        assert [op.payload["typing"]["is_typing"] for op in core.queue.pending()] == [True, False]
        assert await store.get("typing_status", f"{KEY}_alice") is None

        await core.connectivity.drain()
        assert (await store.get("typing_status", f"{KEY}_alice"))["is_typing"] is False

    async def test_stale_typing_replayed_as_stopped(self, core, store):
        old = (utcnow() - timedelta(minutes=5)).isoformat()
        core.queue.enqueue(
            OfflineOperationKind.SET_TYPING,
            {"typing": {"conversation_key": KEY, "user_id": "bob", "is_typing": True, "updated_at": old}},
        )
        await core.connectivity.drain()
        assert (await store.get("typing_status", f"{KEY}_bob"))["is_typing"] is False
