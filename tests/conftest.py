import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chatcore.config import Settings
from chatcore.container import ChatCore
from chatcore.database.memory_store import InMemoryRemoteStore


class FakeClock:
    """Advances one second per reading so every write gets a distinct timestamp."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


async def _take(subscription, count=1, timeout=1.0):
    return [await asyncio.wait_for(subscription.__anext__(), timeout) for _ in range(count)]


@pytest.fixture
def settings():
    return Settings(
        TYPING_TIMEOUT_SECONDS=0.05,
        SUBSCRIBER_BUFFER_SIZE=16,
        CONNECTIVITY_PROBE_SECONDS=0.01,
    )


@pytest.fixture
def store():
    return InMemoryRemoteStore()


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr("chatcore.services.chat_service.utcnow", fake)
    return fake


@pytest.fixture
async def core(settings, store):
    core = ChatCore(settings, store)
    yield core
    await core.presence.close()
    core.hub.close()


@pytest.fixture
def chat(core):
    return core.chat


@pytest.fixture
def hub(core):
    return core.hub


@pytest.fixture
def take():
    return _take
