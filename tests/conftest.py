"""Shared fixtures: ScopedPubSub instances backed by one in-process fake Redis server."""

import asyncio
import logging

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis

from scoped_pubsub import ScopedPubSub

logging.getLogger("scoped_pubsub").setLevel(logging.WARNING)


@pytest.fixture
def redis_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def client_factory(redis_server):
    """Client factory for ScopedPubSub; every client it builds talks to the same fake server."""
    def factory(options):
        return fake_aioredis.FakeRedis(server=redis_server, decode_responses=True)
    return factory


@pytest_asyncio.fixture
async def make_bus(client_factory):
    """Build ScopedPubSub instances (one per simulated process); all are closed after the test."""
    buses = []

    def make(**options) -> ScopedPubSub:
        bus = ScopedPubSub(client_factory=client_factory, **options)
        buses.append(bus)
        return bus

    yield make
    for bus in buses:
        await bus.close()


@pytest.fixture
def eventually():
    """Poll a predicate until it holds, failing the test after timeout seconds."""
    async def wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail("condition not met before timeout")
            await asyncio.sleep(0.01)
    return wait


class Recorder:
    """Handler that records (value, physical_channel) calls."""

    def __init__(self, name: str = "recorder", log=None) -> None:
        self.name = name
        self.calls = []
        self._log = log

    def __call__(self, value, physical_channel) -> None:
        self.calls.append((value, physical_channel))
        if self._log is not None:
            self._log.append(self.name)

    def __repr__(self) -> str:
        return f"Recorder({self.name!r})"


@pytest.fixture
def recorder():
    return Recorder
