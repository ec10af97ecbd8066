"""Error taxonomy shared by the signaling, transfer and session layers."""

from enum import Enum

from pydantic import BaseModel


class FailureKind(str, Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    INCOMPLETE = "incomplete"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class FailureReason(BaseModel):
    """Payload of the ``failed`` session event."""
    kind: FailureKind
    message: str


class PeerDropError(Exception):
    """Base class for all errors raised by this package."""

    kind: FailureKind = FailureKind.PROTOCOL

    def to_reason(self) -> FailureReason:
        return FailureReason(kind=self.kind, message=str(self))


class SignalDecodeError(PeerDropError):
    """A pasted signaling blob is truncated or not one of ours.

    Recoverable: the session is left untouched and the caller may ask the
    user for the blob again.
    """


class TransportError(PeerDropError):
    kind = FailureKind.TRANSPORT


class ProtocolViolation(PeerDropError):
    kind = FailureKind.PROTOCOL


class IncompleteTransfer(PeerDropError):
    kind = FailureKind.INCOMPLETE


class SessionTimeout(PeerDropError):
    kind = FailureKind.TIMEOUT


class TransferCancelled(PeerDropError):
    kind = FailureKind.CANCELLED
