"""
Signal codec: turns signaling envelopes into copy-pasteable text.

A blob is ``PD1-`` followed by the unpadded base64url encoding of a
zlib-compressed JSON object ``{"k": kind, "p": base64 payload}``. Several
blobs meant for the same transmission are joined with ``.``, which never
appears inside a single blob.
"""

import base64
import json
import zlib

from pydantic import ValidationError

from errors import SignalDecodeError
from signaling.models import SignalEnvelope

BLOB_PREFIX = "PD1-"
SEPARATOR = "."


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


def encode(envelope: SignalEnvelope) -> str:
    """Encode a single envelope as a text blob."""
    body = json.dumps(
        {
            "k": envelope.kind.value,
            "p": base64.b64encode(envelope.payload).decode("ascii"),
        },
        separators=(",", ":"),
    ).encode("utf-8")
    packed = base64.urlsafe_b64encode(zlib.compress(body, 9)).rstrip(b"=")
    return BLOB_PREFIX + packed.decode("ascii")


def decode(blob: str) -> SignalEnvelope:
    """Decode a single blob. Raises SignalDecodeError on malformed input."""
    blob = "".join(blob.split())
    if not blob.startswith(BLOB_PREFIX):
        raise SignalDecodeError("not a signaling blob (missing prefix)")

    try:
        body = zlib.decompress(_b64url_decode(blob[len(BLOB_PREFIX):]))
        data = json.loads(body.decode("utf-8"))
        payload = base64.b64decode(data["p"], validate=True)
        return SignalEnvelope(kind=data["k"], payload=payload)
    except ValidationError as e:
        raise SignalDecodeError(f"signaling blob has unexpected content: {e}") from e
    except (ValueError, zlib.error) as e:
        # binascii.Error, JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise SignalDecodeError(f"malformed signaling blob: {e}") from e
    except (KeyError, TypeError) as e:
        raise SignalDecodeError(f"signaling blob has unexpected content: {e}") from e


def encode_many(envelopes) -> str:
    return SEPARATOR.join(encode(env) for env in envelopes)


def decode_many(text: str) -> list[SignalEnvelope]:
    """Decode every blob in ``text``; all of them must be valid."""
    parts = [p for p in "".join(text.split()).split(SEPARATOR) if p]
    if not parts:
        raise SignalDecodeError("no signaling data supplied")
    return [decode(part) for part in parts]
