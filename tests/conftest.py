import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from agentcoord.bus import MessageBus
from agentcoord.transports.inmemory import InMemoryTransport


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in (
        "AGENTCOORD_DATABASE_URL",
        "DATABASE_URL",
        "AGENTCOORD_HEALTH_DATABASE_URL",
        "AGENTCOORD_TRANSPORT",
        "AGENTCOORD_ENV",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AGENTCOORD_CONFIG", str(tmp_path / "missing-config.yaml"))


class FakeClock:
    """Hand-driven clock returning timezone-aware UTC datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self.now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self.now


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_for_condition(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``predicate`` until it is truthy; fail the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if result:
            return result
        if loop.time() > deadline:
            pytest.fail("condition not met within timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    return wait_for_condition


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def bus(transport: InMemoryTransport) -> MessageBus:
    return MessageBus(transport)
