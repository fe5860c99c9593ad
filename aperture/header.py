"""Reading and writing LSAT credentials in HTTP headers."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Iterable, Mapping, MutableMapping

from aperture.caveat import PREIMAGE_KEY, has_caveat
from aperture.macaroon import Macaroon, MacaroonError

HEADER_AUTHORIZATION = "Authorization"
HEADER_MACAROON_MD = "Grpc-Metadata-Macaroon"
HEADER_MACAROON = "Macaroon"

PREIMAGE_SIZE = 32

_AUTH_RE = re.compile(r"LSAT (.*?):([a-f0-9]{64})")
_HEX_RE = re.compile(r"(?:[0-9a-fA-F]{2})*")

_log = logging.getLogger(__name__)


class AuthHeaderError(ValueError):
    """Raised when no usable LSAT can be read from the headers."""


HeaderValue = str | Iterable[str]


def _header_value(headers: Mapping[str, HeaderValue], name: str) -> str:
    """First value of a header, looked up without regard to case."""
    target = name.lower()
    for key, value in headers.items():
        if key.lower() != target:
            continue
        if isinstance(value, str):
            return value
        values = list(value)
        return values[0] if values else ""
    return ""


def _decode_hex(text: str) -> bytes:
    if not _HEX_RE.fullmatch(text):
        raise ValueError(f"invalid hex string: {text!r}")
    return bytes.fromhex(text)


def _decode_preimage(text: str) -> bytes:
    want = PREIMAGE_SIZE * 2
    if len(text) != want:
        raise ValueError(f"invalid preimage string length of {len(text)}, "
                         f"want {want}")
    return _decode_hex(text)


def _unmarshal(mac_bytes: bytes) -> Macaroon:
    try:
        return Macaroon.from_bytes(mac_bytes)
    except MacaroonError as exc:
        raise AuthHeaderError(f"unable to unmarshal macaroon: {exc}") from exc


def from_header(headers: Mapping[str, HeaderValue]) -> tuple[Macaroon, bytes]:
    """Extract the macaroon and preimage of an LSAT from HTTP headers.

    Accepted forms, in order of precedence:
      Authorization: LSAT <macBase64>:<preimageHex>
      Grpc-Metadata-Macaroon: <macHex>
      Macaroon: <macHex>
    The last two need the preimage as a caveat of the macaroon.
    """
    auth_value = _header_value(headers, HEADER_AUTHORIZATION)
    if auth_value:
        _log.debug("Trying to authorize with header value [%s].", auth_value)
        match = _AUTH_RE.search(auth_value)
        if match is None:
            raise AuthHeaderError(f"invalid auth header format: {auth_value}")
        mac_base64, preimage_hex = match.group(1), match.group(2)
        try:
            mac_bytes = base64.b64decode(mac_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AuthHeaderError(
                f"base64 decode of macaroon failed: {exc}") from exc
        mac = _unmarshal(mac_bytes)
        try:
            preimage = _decode_preimage(preimage_hex)
        except ValueError as exc:
            raise AuthHeaderError(
                f"hex decode of preimage failed: {exc}") from exc
        return mac, preimage

    auth_value = (_header_value(headers, HEADER_MACAROON_MD)
                  or _header_value(headers, HEADER_MACAROON))
    if not auth_value:
        raise AuthHeaderError("no auth header provided")

    try:
        mac_bytes = _decode_hex(auth_value)
    except ValueError as exc:
        raise AuthHeaderError(f"hex decode of macaroon failed: {exc}") from exc
    mac = _unmarshal(mac_bytes)

    preimage_hex = has_caveat(mac, PREIMAGE_KEY)
    if preimage_hex is None:
        raise AuthHeaderError("preimage caveat not found")
    try:
        preimage = _decode_preimage(preimage_hex)
    except ValueError as exc:
        raise AuthHeaderError(f"hex decode of preimage failed: {exc}") from exc
    return mac, preimage


def set_header(headers: MutableMapping[str, HeaderValue], macaroon: Macaroon,
               preimage: bytes | str) -> None:
    """Set the standard LSAT Authorization header, replacing any present."""
    preimage_text = (bytes(preimage).hex()
                     if isinstance(preimage, (bytes, bytearray)) else str(preimage))
    mac_base64 = base64.b64encode(macaroon.to_bytes()).decode("ascii")
    for key in [k for k in headers if k.lower() == HEADER_AUTHORIZATION.lower()]:
        del headers[key]
    headers[HEADER_AUTHORIZATION] = f"LSAT {mac_base64}:{preimage_text}"