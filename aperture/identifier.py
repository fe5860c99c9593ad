"""The versioned identifier encoded in an LSAT's macaroon."""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass, field

LATEST_VERSION = 0
SECRET_SIZE = 32
TOKEN_ID_SIZE = 32
HASH_SIZE = 32

_HEX_RE = re.compile(r"[0-9a-fA-F]*")


class UnknownVersionError(ValueError):
    """Raised for an identifier version that is not known."""

    def __init__(self, version: int):
        super().__init__(f"unknown LSAT version: {version}")
        self.version = version


class TokenID(bytes):
    """The unique identifier of an LSAT; its text form is hex."""

    def __new__(cls, value: bytes = bytes(TOKEN_ID_SIZE)) -> TokenID:
        obj = super().__new__(cls, value)
        if len(obj) != TOKEN_ID_SIZE:
            raise ValueError(
                f"token id must be {TOKEN_ID_SIZE} bytes, got {len(obj)}")
        return obj

    def __str__(self) -> str:
        return self.hex()

    @classmethod
    def from_hex(cls, text: str) -> TokenID:
        want = TOKEN_ID_SIZE * 2
        if len(text) != want:
            raise ValueError(
                f"invalid id string length of {len(text)}, want {want}")
        if not _HEX_RE.fullmatch(text):
            raise ValueError(f"invalid hex in token id: {text!r}")
        return cls(bytes.fromhex(text))


@dataclass(frozen=True)
class Identifier:
    """Static identifying details of an LSAT."""

    version: int = LATEST_VERSION
    payment_hash: bytes = bytes(HASH_SIZE)
    token_id: TokenID = field(default_factory=TokenID)

    def __post_init__(self) -> None:
        if not 0 <= self.version <= 0xFFFF:
            raise ValueError(f"version {self.version} does not fit in 16 bits")
        if len(self.payment_hash) != HASH_SIZE:
            raise ValueError(f"payment hash must be {HASH_SIZE} bytes")
        object.__setattr__(self, "payment_hash", bytes(self.payment_hash))
        if not isinstance(self.token_id, TokenID):
            object.__setattr__(self, "token_id", TokenID(self.token_id))


def encode_identifier(identifier: Identifier) -> bytes:
    if identifier.version != 0:
        raise UnknownVersionError(identifier.version)
    return (struct.pack(">H", identifier.version) + identifier.payment_hash
            + bytes(identifier.token_id))


def decode_identifier(data: bytes) -> Identifier:
    """Decode an identifier; bytes after it are ignored."""
    data = bytes(data)
    if len(data) < 2:
        raise ValueError("identifier too short to hold a version")
    (version,) = struct.unpack_from(">H", data)
    if version != 0:
        raise UnknownVersionError(version)
    body = data[2:]
    if len(body) < HASH_SIZE + TOKEN_ID_SIZE:
        raise ValueError("identifier truncated")
    return Identifier(
        version=version,
        payment_hash=body[:HASH_SIZE],
        token_id=TokenID(body[HASH_SIZE:HASH_SIZE + TOKEN_ID_SIZE]),
    )