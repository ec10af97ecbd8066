"""Shared pytest fixtures for all tests."""

import asyncio
import random

import pytest
import pytest_asyncio

from session.models import SessionSettings, SessionState
from session.peer import PeerSession
from transport.base import Role
from transport.loopback import LoopbackTransport


class EventRecorder:
    """Collects (event_type, data) pairs emitted by a session or manager."""

    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []

    async def __call__(self, event_type: str, data) -> None:
        self.events.append((event_type, data))

    def of(self, event_type: str) -> list:
        return [data for kind, data in self.events if kind == event_type]


@pytest.fixture
def settings():
    """Session settings tuned for fast, deterministic tests."""
    return SessionSettings(
        chunk_size=64 * 1024,
        transfer_timeout=5.0,
        accept_timeout=None,
        progress_interval=0.0,
    )


@pytest.fixture
def loopback():
    return LoopbackTransport()


@pytest.fixture
def make_file(tmp_path):
    """
    Factory writing a file of pseudo-random bytes.

    Returns:
        fn(size, name) -> (path, data)
    """
    def _make(size: int, name: str = "payload.bin"):
        data = random.Random(size).randbytes(size)
        path = tmp_path / name
        path.write_bytes(data)
        return str(path), data

    return _make


@pytest.fixture
def eventually():
    """Poll an async-side condition until it holds or the timeout expires."""
    async def _eventually(predicate, timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _eventually


async def pair_sessions(transport, settings):
    """Run the copy-paste handshake between two fresh sessions."""
    initiator = PeerSession(transport, settings)
    responder = PeerSession(transport, settings)
    await initiator.start(Role.INITIATOR)
    await responder.start(Role.RESPONDER)

    await responder.supply_remote_signal(initiator.local_signal)
    await initiator.supply_remote_signal(responder.local_signal)

    await initiator.wait_for(SessionState.CONNECTED, timeout=5)
    await responder.wait_for(SessionState.CONNECTED, timeout=5)
    return initiator, responder


@pytest_asyncio.fixture
async def paired(loopback, settings):
    """A connected (initiator, responder) pair over the loopback transport."""
    initiator, responder = await pair_sessions(loopback, settings)
    yield initiator, responder
    await initiator.close()
    await responder.close()


@pytest.fixture
def recorder_factory():
    def _attach(session) -> EventRecorder:
        recorder = EventRecorder()
        session.on_event(recorder)
        return recorder

    return _attach
