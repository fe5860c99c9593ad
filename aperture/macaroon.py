"""Macaroon bearer credentials with the version 2 binary encoding."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

VERSION = 2
SIGNATURE_SIZE = 32

_FIELD_EOS = 0
_FIELD_LOCATION = 1
_FIELD_IDENTIFIER = 2
_FIELD_VERIFICATION_ID = 4
_FIELD_SIGNATURE = 6

_KEY_GENERATOR = b"macaroons-key-generator"


class MacaroonError(ValueError):
    """Raised when a macaroon cannot be encoded or decoded."""


def _keyed_hash(key: bytes, text: bytes) -> bytes:
    return hmac.new(key, text, hashlib.sha256).digest()


def _derive_key(root_key: bytes) -> bytes:
    return _keyed_hash(_KEY_GENERATOR, root_key)


def _put_uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _field(field_type: int, data: bytes) -> bytes:
    return bytes([field_type]) + _put_uvarint(len(data)) + data


@dataclass(frozen=True)
class _RawCaveat:
    id: bytes
    verification_id: bytes = b""
    location: str = ""


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def byte(self) -> int:
        if self._pos >= len(self._data):
            raise MacaroonError("unexpected end of macaroon data")
        value = self._data[self._pos]
        self._pos += 1
        return value

    def uvarint(self) -> int:
        result = 0
        for shift in range(0, 70, 7):
            b = self.byte()
            result |= (b & 0x7F) << shift
            if b < 0x80:
                return result
        raise MacaroonError("varint overflow in macaroon data")

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise MacaroonError("field data extends past end of macaroon")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def field(self) -> tuple[int, bytes]:
        field_type = self.byte()
        if field_type == _FIELD_EOS:
            return _FIELD_EOS, b""
        return field_type, self.take(self.uvarint())

    def section(self) -> dict[int, bytes]:
        fields: dict[int, bytes] = {}
        last = _FIELD_EOS
        while True:
            field_type, data = self.field()
            if field_type == _FIELD_EOS:
                return fields
            if field_type <= last:
                raise MacaroonError("macaroon fields out of order")
            last = field_type
            fields[field_type] = data


def _decode_location(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MacaroonError("macaroon location is not valid UTF-8") from exc


class Macaroon:
    """A macaroon whose signature chains over its identifier and caveats."""

    def __init__(self, root_key: bytes = b"", identifier: bytes = b"",
                 location: str = "") -> None:
        self.id = bytes(identifier)
        self.location = location
        self._caveats: list[_RawCaveat] = []
        self._signature = _keyed_hash(_derive_key(bytes(root_key)), self.id)

    @property
    def signature(self) -> bytes:
        return self._signature

    def add_first_party_caveat(self, caveat_id: bytes | str) -> None:
        """Append a first-party caveat and extend the signature chain."""
        if isinstance(caveat_id, str):
            caveat_id = caveat_id.encode("utf-8")
        caveat_id = bytes(caveat_id)
        self._caveats.append(_RawCaveat(id=caveat_id))
        self._signature = _keyed_hash(self._signature, caveat_id)

    def caveats(self) -> list[bytes]:
        """Return the identifiers of all caveats in the order they were added."""
        return [caveat.id for caveat in self._caveats]

    def clone(self) -> Macaroon:
        copy = Macaroon.__new__(Macaroon)
        copy.id = self.id
        copy.location = self.location
        copy._caveats = list(self._caveats)
        copy._signature = self._signature
        return copy

    def to_bytes(self) -> bytes:
        out = bytearray([VERSION])
        if self.location:
            out += _field(_FIELD_LOCATION, self.location.encode("utf-8"))
        out += _field(_FIELD_IDENTIFIER, self.id)
        out.append(_FIELD_EOS)
        for caveat in self._caveats:
            if caveat.location:
                out += _field(_FIELD_LOCATION, caveat.location.encode("utf-8"))
            out += _field(_FIELD_IDENTIFIER, caveat.id)
            if caveat.verification_id:
                out += _field(_FIELD_VERIFICATION_ID, caveat.verification_id)
            out.append(_FIELD_EOS)
        out.append(_FIELD_EOS)
        out += _field(_FIELD_SIGNATURE, self._signature)
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> Macaroon:
        """Decode a macaroon; trailing bytes after the signature are ignored."""
        reader = _Reader(bytes(data))
        if reader.byte() != VERSION:
            raise MacaroonError("unsupported macaroon version")

        header = reader.section()
        if _FIELD_IDENTIFIER not in header:
            raise MacaroonError("macaroon identifier not found")
        if set(header) - {_FIELD_LOCATION, _FIELD_IDENTIFIER}:
            raise MacaroonError("unexpected field in macaroon header")

        caveats = []
        while True:
            section = reader.section()
            if not section:
                break
            if _FIELD_IDENTIFIER not in section:
                raise MacaroonError("caveat identifier not found")
            allowed = {_FIELD_LOCATION, _FIELD_IDENTIFIER, _FIELD_VERIFICATION_ID}
            if set(section) - allowed:
                raise MacaroonError("unexpected field in caveat")
            caveats.append(_RawCaveat(
                id=section[_FIELD_IDENTIFIER],
                verification_id=section.get(_FIELD_VERIFICATION_ID, b""),
                location=_decode_location(section.get(_FIELD_LOCATION, b"")),
            ))

        field_type, signature = reader.field()
        if field_type != _FIELD_SIGNATURE:
            raise MacaroonError("macaroon signature not found")
        if len(signature) != SIGNATURE_SIZE:
            raise MacaroonError("macaroon signature has wrong length")

        mac = cls.__new__(cls)
        mac.id = header[_FIELD_IDENTIFIER]
        mac.location = _decode_location(header.get(_FIELD_LOCATION, b""))
        mac._caveats = caveats
        mac._signature = signature
        return mac

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Macaroon):
            return NotImplemented
        return (self.id == other.id and self.location == other.location
                and self._caveats == other._caveats
                and self._signature == other._signature)

    def __hash__(self) -> int:
        return hash((self.id, self._signature))

    def __repr__(self) -> str:
        return (f"Macaroon(id={self.id!r}, location={self.location!r}, "
                f"caveats={len(self._caveats)})")