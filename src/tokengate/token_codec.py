"""Self-describing access tokens sealed with AES-256-GCM under per-token derived keys.

Frame layout (hex-encoded for transport)::

    [issuance_time: 8 bytes BE][identity_len: 1][identity][nonce: 12][ciphertext+tag]

The identity and issuance time travel in the clear so the verifier can
re-derive the key; no per-token secret is ever stored. The header is also
bound as AEAD associated data, and the ciphertext re-encodes both fields.
"""

from __future__ import annotations

import binascii
import json
import os
import struct
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from tokengate.constants import (
    GCM_TAG_BYTES,
    IDENTITY_LEN_BYTES,
    KEY_BYTES,
    MAX_IDENTITY_BYTES,
    NONCE_BYTES,
    TIMESTAMP_BYTES,
)

_KDF_INFO = b"tokengate/token-key/v1"
_HEADER_PREFIX = TIMESTAMP_BYTES + IDENTITY_LEN_BYTES

# Smallest well-formed frame: one identity byte and an empty plaintext.
MIN_FRAME_BYTES = _HEADER_PREFIX + 1 + NONCE_BYTES + GCM_TAG_BYTES


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class TokenError(Exception):
    """Base exception for token decoding failures."""


class MalformedTokenError(TokenError):
    """Not valid hex or not a structurally valid frame. No trust established."""


class TokenDecryptError(TokenError):
    """AEAD authentication failed: the key is wrong or the ciphertext was altered."""


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenFrame:
    """The cleartext parts of a token, before any cryptography."""

    issuance_time: int
    identity: str
    header: bytes
    nonce: bytes
    ciphertext: bytes


@dataclass(frozen=True)
class TokenPayload:
    identity: str
    origin: str
    issuance_time: int


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def derive_key(identity: str, issuance_time: int, salt: str = "") -> bytes:
    """Derive the 32-byte AES key for ``(identity, issuance_time)``.

    HKDF-SHA256 over ``"{identity}_{issuance_time}"`` with the server-wide
    salt. Deterministic: the same inputs always give the same key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt.encode() or None,
        info=_KDF_INFO,
    )
    return hkdf.derive(f"{identity}_{issuance_time}".encode())


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _encode_header(identity: str, issuance_time: int) -> bytes:
    identity_bytes = identity.encode()
    if not 1 <= len(identity_bytes) <= MAX_IDENTITY_BYTES:
        raise ValueError(
            f"identity must encode to 1..{MAX_IDENTITY_BYTES} bytes, got {len(identity_bytes)}"
        )
    if not 0 <= issuance_time < 2**63:
        raise ValueError(f"issuance_time out of range: {issuance_time}")
    return struct.pack(">QB", issuance_time, len(identity_bytes)) + identity_bytes


def issue_token(identity: str, origin: str, issuance_time: int, *, salt: str = "") -> str:
    """Encrypt ``{identity, origin, issuance_time}`` into a hex token."""
    header = _encode_header(identity, issuance_time)
    plaintext = json.dumps(
        {"identity": identity, "origin": origin, "issuance_time": issuance_time},
        separators=(",", ":"),
    ).encode()
    nonce = os.urandom(NONCE_BYTES)
    key = derive_key(identity, issuance_time, salt)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, header)
    return (header + nonce + ciphertext).hex()


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def parse_frame(token_hex: str) -> TokenFrame:
    """Split a hex token into its parts. Raises MalformedTokenError."""
    try:
        data = binascii.unhexlify(token_hex)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedTokenError(f"token is not valid hex: {e}") from e

    if len(data) < MIN_FRAME_BYTES:
        raise MalformedTokenError(f"token too short ({len(data)} bytes)")

    issuance_time, identity_len = struct.unpack(">QB", data[:_HEADER_PREFIX])
    if identity_len == 0:
        raise MalformedTokenError("token declares an empty identity")

    nonce_start = _HEADER_PREFIX + identity_len
    body_start = nonce_start + NONCE_BYTES
    if len(data) < body_start + GCM_TAG_BYTES:
        raise MalformedTokenError("declared identity length exceeds token frame")

    try:
        identity = data[_HEADER_PREFIX:nonce_start].decode()
    except UnicodeDecodeError as e:
        raise MalformedTokenError("identity is not valid UTF-8") from e

    return TokenFrame(
        issuance_time=issuance_time,
        identity=identity,
        header=data[:nonce_start],
        nonce=data[nonce_start:body_start],
        ciphertext=data[body_start:],
    )


def open_frame(frame: TokenFrame, *, salt: str = "") -> TokenPayload:
    """Re-derive the key from the frame and decrypt. Raises TokenDecryptError."""
    key = derive_key(frame.identity, frame.issuance_time, salt)
    try:
        plaintext = AESGCM(key).decrypt(frame.nonce, frame.ciphertext, frame.header)
    except InvalidTag as e:
        raise TokenDecryptError("token authentication failed") from e

    try:
        obj = json.loads(plaintext)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise TokenDecryptError("decrypted payload is not JSON") from e

    if not isinstance(obj, dict):
        raise TokenDecryptError("decrypted payload is not an object")

    identity = obj.get("identity")
    origin = obj.get("origin")
    issuance_time = obj.get("issuance_time")
    if not isinstance(origin, str) or not isinstance(issuance_time, int):
        raise TokenDecryptError("decrypted payload is missing fields")
    if identity != frame.identity or issuance_time != frame.issuance_time:
        raise TokenDecryptError("decrypted payload does not match token header")

    return TokenPayload(identity=identity, origin=origin, issuance_time=issuance_time)


def decode_token(token_hex: str, *, salt: str = "") -> TokenPayload:
    """Parse and decrypt a token. Raises MalformedTokenError or TokenDecryptError."""
    return open_frame(parse_frame(token_hex), salt=salt)

