"""The LSAT token held by a client and its binary serialization."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from aperture.caveat import PREIMAGE_KEY, Caveat, add_first_party_caveats
from aperture.identifier import HASH_SIZE
from aperture.macaroon import Macaroon

PREIMAGE_SIZE = 32
ZERO_PREIMAGE = bytes(PREIMAGE_SIZE)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_unix_nano(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return (moment - _EPOCH) // _MICROSECOND * 1000


def _from_unix_nano(nanos: int) -> datetime:
    try:
        return _EPOCH + timedelta(microseconds=nanos // 1000)
    except OverflowError as exc:
        raise ValueError(f"token creation time out of range: {nanos}") from exc


@dataclass
class Token:
    """An LSAT token; amounts are in millisatoshis.

    A token whose preimage is all zeros is still pending payment.
    """

    base_mac: Macaroon
    payment_hash: bytes = ZERO_PREIMAGE
    preimage: bytes = ZERO_PREIMAGE
    amount_paid: int = 0
    routing_fee_paid: int = 0
    time_created: datetime = field(default_factory=_now)

    def base_macaroon(self) -> Macaroon:
        """A copy of the macaroon as baked by the authentication server."""
        return self.base_mac.clone()

    def paid_macaroon(self) -> Macaroon:
        """The base macaroon with the preimage added as a caveat."""
        mac = self.base_macaroon()
        add_first_party_caveats(mac, Caveat(PREIMAGE_KEY, bytes(self.preimage).hex()))
        return mac

    def is_valid(self) -> bool:
        return True

    def is_pending(self) -> bool:
        return bytes(self.preimage) == ZERO_PREIMAGE


def token_from_challenge(base_mac: bytes, payment_hash: bytes) -> Token:
    """Build a pending token from a challenge's macaroon and payment hash."""
    try:
        mac = Macaroon.from_bytes(base_mac)
    except ValueError as exc:
        raise ValueError(f"unable to unmarshal macaroon: {exc}") from exc
    payment_hash = bytes(payment_hash)
    if len(payment_hash) != HASH_SIZE:
        raise ValueError(
            f"invalid hash length of {len(payment_hash)}, want {HASH_SIZE}")
    return Token(base_mac=mac, payment_hash=payment_hash,
                 preimage=ZERO_PREIMAGE)


def serialize_token(token: Token) -> bytes:
    mac_bytes = token.base_mac.to_bytes()
    payment_hash = bytes(token.payment_hash)
    preimage = bytes(token.preimage)
    if len(payment_hash) != HASH_SIZE:
        raise ValueError(f"payment hash must be {HASH_SIZE} bytes")
    if len(preimage) != PREIMAGE_SIZE:
        raise ValueError(f"preimage must be {PREIMAGE_SIZE} bytes")
    return b"".join((
        struct.pack(">I", len(mac_bytes)),
        mac_bytes,
        payment_hash,
        preimage,
        struct.pack(">QQq", token.amount_paid, token.routing_fee_paid,
                    _to_unix_nano(token.time_created)),
    ))


class _Cursor:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise ValueError("unexpected end of token data")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def unpack(self, fmt: str) -> tuple:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))


def deserialize_token(data: bytes) -> Token:
    """Decode a token; bytes after it are ignored."""
    cursor = _Cursor(bytes(data))
    (mac_len,) = cursor.unpack(">I")
    mac_bytes = cursor.take(mac_len)
    payment_hash = cursor.take(HASH_SIZE)
    token = token_from_challenge(mac_bytes, payment_hash)
    token.preimage = cursor.take(PREIMAGE_SIZE)
    token.amount_paid, token.routing_fee_paid, nanos = cursor.unpack(">QQq")
    token.time_created = _from_unix_nano(nanos)
    return token