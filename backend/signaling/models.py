"""Pydantic models for out-of-band signaling."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class SignalKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"


class SignalEnvelope(BaseModel):
    """One signaling message, forwarded verbatim between the two peers."""
    model_config = ConfigDict(frozen=True)

    kind: SignalKind
    payload: bytes

    @property
    def is_description(self) -> bool:
        return self.kind in (SignalKind.OFFER, SignalKind.ANSWER)
