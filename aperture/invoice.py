"""Decoding of BOLT 11 payment requests."""

from __future__ import annotations

import re
from dataclasses import dataclass

_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_CHAR_VALUES = {char: value for value, char in enumerate(_CHARSET)}
_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_CHECKSUM_WORDS = 6
_TIMESTAMP_WORDS = 7
_SIGNATURE_WORDS = 104

_MSAT_PER_BTC = 100_000_000_000
_MULTIPLIERS = {
    "": _MSAT_PER_BTC,
    "m": _MSAT_PER_BTC // 1_000,
    "u": _MSAT_PER_BTC // 1_000_000,
    "n": _MSAT_PER_BTC // 1_000_000_000,
}

_HRP_RE = re.compile(r"ln([a-z]+)(?:([0-9]+)([munp]?))?")

_TAG_PAYMENT_HASH = 1
_TAG_EXPIRY = 6
_TAG_DESCRIPTION = 13
_TAG_PAYMENT_SECRET = 16
_TAG_PAYEE = 19
_TAG_DESCRIPTION_HASH = 23
_TAG_MIN_FINAL_CLTV = 24

_HASH_WORDS = 52
_PUBKEY_WORDS = 53

DEFAULT_EXPIRY = 3600
DEFAULT_MIN_FINAL_CLTV_EXPIRY = 18


class InvoiceError(ValueError):
    """Raised when a payment request cannot be decoded."""


@dataclass(frozen=True)
class Invoice:
    """The fields of a payment request; amounts are in millisatoshis."""

    currency: str
    amount_msat: int | None
    timestamp: int
    payment_hash: bytes
    description: str | None = None
    description_hash: bytes | None = None
    payment_secret: bytes | None = None
    payee: bytes | None = None
    expiry: int = DEFAULT_EXPIRY
    min_final_cltv_expiry: int = DEFAULT_MIN_FINAL_CLTV_EXPIRY
    signature: bytes = b""


def _polymod(values: list[int]) -> int:
    checksum = 1
    for value in values:
        top = checksum >> 25
        checksum = ((checksum & 0x1FFFFFF) << 5) ^ value
        for i, generator in enumerate(_GENERATOR):
            if (top >> i) & 1:
                checksum ^= generator
    return checksum


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _bech32_decode(text: str) -> tuple[str, list[int]]:
    if any(not 33 <= ord(c) <= 126 for c in text):
        raise InvoiceError("invoice contains invalid characters")
    if text.lower() != text and text.upper() != text:
        raise InvoiceError("invoice mixes upper and lower case")
    text = text.lower()
    separator = text.rfind("1")
    if separator < 1 or separator + _CHECKSUM_WORDS + 1 > len(text):
        raise InvoiceError("invalid separator position in invoice")
    hrp = text[:separator]
    try:
        words = [_CHAR_VALUES[c] for c in text[separator + 1:]]
    except KeyError as exc:
        raise InvoiceError(f"invalid character {exc.args[0]!r} in invoice") from None
    if _polymod(_hrp_expand(hrp) + words) != 1:
        raise InvoiceError("invalid invoice checksum")
    return hrp, words[:-_CHECKSUM_WORDS]


def _words_to_bytes(words: list[int]) -> bytes:
    acc = 0
    bits = 0
    out = bytearray()
    for word in words:
        acc = (acc << 5) | word
        bits += 5
        while bits >= 8:
            bits -= 8
            out.append((acc >> bits) & 0xFF)
        acc &= (1 << bits) - 1
    return bytes(out)


def _words_to_int(words: list[int]) -> int:
    value = 0
    for word in words:
        value = (value << 5) | word
    return value


def _parse_hrp(hrp: str) -> tuple[str, int | None]:
    match = _HRP_RE.fullmatch(hrp)
    if match is None:
        raise InvoiceError(f"invalid invoice prefix: {hrp!r}")
    currency, amount_text, multiplier = match.groups()
    if amount_text is None:
        return currency, None
    amount = int(amount_text)
    if multiplier == "p":
        if amount % 10:
            raise InvoiceError("pico amount is not a whole millisatoshi")
        return currency, amount // 10
    return currency, amount * _MULTIPLIERS[multiplier]


def decode_invoice(text: str) -> Invoice:
    """Decode a payment request; its signature is not verified."""
    hrp, words = _bech32_decode(text.strip())
    currency, amount_msat = _parse_hrp(hrp)

    if len(words) < _TIMESTAMP_WORDS + _SIGNATURE_WORDS:
        raise InvoiceError("invoice too short")
    timestamp = _words_to_int(words[:_TIMESTAMP_WORDS])
    signature = _words_to_bytes(words[-_SIGNATURE_WORDS:])
    fields = words[_TIMESTAMP_WORDS:-_SIGNATURE_WORDS]

    values: dict[str, object] = {}
    pos = 0
    while pos < len(fields):
        if pos + 3 > len(fields):
            raise InvoiceError("truncated tagged field in invoice")
        tag = fields[pos]
        length = fields[pos + 1] * 32 + fields[pos + 2]
        data = fields[pos + 3:pos + 3 + length]
        if len(data) != length:
            raise InvoiceError("tagged field extends past end of invoice")
        pos += 3 + length

        if tag == _TAG_PAYMENT_HASH and length == _HASH_WORDS:
            values.setdefault("payment_hash", _words_to_bytes(data))
        elif tag == _TAG_DESCRIPTION:
            try:
                values["description"] = _words_to_bytes(data).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise InvoiceError("invoice description is not UTF-8") from exc
        elif tag == _TAG_DESCRIPTION_HASH and length == _HASH_WORDS:
            values["description_hash"] = _words_to_bytes(data)
        elif tag == _TAG_PAYMENT_SECRET and length == _HASH_WORDS:
            values["payment_secret"] = _words_to_bytes(data)
        elif tag == _TAG_PAYEE and length == _PUBKEY_WORDS:
            values["payee"] = _words_to_bytes(data)
        elif tag == _TAG_EXPIRY:
            values["expiry"] = _words_to_int(data)
        elif tag == _TAG_MIN_FINAL_CLTV:
            values["min_final_cltv_expiry"] = _words_to_int(data)

    if "payment_hash" not in values:
        raise InvoiceError("invoice missing payment hash")

    return Invoice(currency=currency, amount_msat=amount_msat,
                   timestamp=timestamp, signature=signature, **values)