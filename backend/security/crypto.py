"""
Channel security for the direct TCP transport.

Each channel makes a fresh X25519 keypair. The public halves ride inside the
pasted offer and answer, so the person moving the blobs vouches for the
peer. Frames are sealed with AES-256-GCM under a key bound to the session
token.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from errors import TransportError

NONCE_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16
PUBLIC_KEY_SIZE = 32
_KDF_INFO = b"peerdrop-v1-channel-key"


def generate_keypair() -> tuple[x25519.X25519PrivateKey, bytes]:
    """Fresh X25519 keypair; the public half comes back as 32 raw bytes."""
    private_key = x25519.X25519PrivateKey.generate()
    raw_public = private_key.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )
    return private_key, raw_public


def derive_channel_key(
    private_key: x25519.X25519PrivateKey, peer_public: bytes, token: str
) -> bytes:
    """HKDF-SHA256 over the shared secret, salted with the session token."""
    if len(peer_public) != PUBLIC_KEY_SIZE:
        raise TransportError("peer public key has the wrong length")
    try:
        secret = private_key.exchange(x25519.X25519PublicKey.from_public_bytes(peer_public))
    except ValueError as e:
        # Low-order points yield an all-zero secret
        raise TransportError(f"key exchange failed: {e}") from e

    kdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=token.encode("utf-8"),
        info=_KDF_INFO,
    )
    return kdf.derive(secret)


def encrypt_frame(key: bytes, body: bytes, frame_type: int) -> bytes:
    """Seal ``body`` as nonce | ciphertext | tag, authenticating the frame type."""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, body, bytes([frame_type]))


def decrypt_frame(key: bytes, sealed: bytes, frame_type: int) -> bytes:
    """Open a sealed frame. Raises TransportError if it was tampered with."""
    if len(sealed) < NONCE_SIZE + TAG_SIZE:
        raise TransportError("encrypted frame too short")
    try:
        return AESGCM(key).decrypt(
            sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], bytes([frame_type])
        )
    except InvalidTag as e:
        raise TransportError("frame failed authentication") from e
