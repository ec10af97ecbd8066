"""
Transport capability set consumed by the peer session.

A transport opens exactly one bidirectional message channel per session.
Everything it has to say flows back through the async callbacks in
``ChannelEvents``; the session never polls it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from signaling.models import SignalEnvelope


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class TransportState(str, Enum):
    CONNECTING = "connecting"
    # Initiator only: the responder's answer matched the connected peer
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class ChannelEvents:
    """Async callbacks a channel reports through."""
    on_local_signal: Callable[[SignalEnvelope], Awaitable[None]]
    on_state_change: Callable[[TransportState], Awaitable[None]]
    on_open: Callable[[], Awaitable[None]]
    on_message: Callable[[bytes | str], Awaitable[None]]
    on_close: Callable[[], Awaitable[None]]
    on_error: Callable[[str], Awaitable[None]]


class Channel(ABC):
    """One negotiated connection to the remote peer."""

    def __init__(self, role: Role, events: ChannelEvents) -> None:
        self.role = role
        self.events = events

    @abstractmethod
    async def start(self) -> None:
        """Begin negotiation; the initiator emits its local signals here."""

    @abstractmethod
    async def apply_remote_signal(self, envelope: SignalEnvelope) -> None:
        """Feed one envelope produced by the remote side."""

    @abstractmethod
    async def send(self, data: bytes | str) -> None:
        """Queue a message; returns once the transport has room for more."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the channel without reporting back through ``events``."""


class Transport(ABC):
    @abstractmethod
    def create_channel(self, role: Role, events: ChannelEvents) -> Channel:
        ...
