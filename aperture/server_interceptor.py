"""Server-side interception that attaches a caller's LSAT token ID."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from aperture.credentials import KEY_METADATA, KEY_TOKEN_ID, add_to_context
from aperture.header import HEADER_AUTHORIZATION, from_header
from aperture.identifier import TokenID, decode_identifier

_log = logging.getLogger(__name__)

Metadata = Mapping[str, str | Iterable[str]]


def _metadata_values(metadata: Metadata, name: str) -> list[str]:
    target = name.lower()
    values: list[str] = []
    for key, value in metadata.items():
        if key.lower() != target:
            continue
        values.extend([value] if isinstance(value, str) else value)
    return values


def token_from_metadata(metadata: Metadata | None) -> TokenID:
    """Read the token ID of the LSAT sent in request metadata."""
    if metadata is None:
        raise ValueError("context contains no metadata")
    values = _metadata_values(metadata, HEADER_AUTHORIZATION)
    _log.debug("Auth header present in request: %s", values)
    try:
        macaroon, _ = from_header({HEADER_AUTHORIZATION: values})
    except ValueError as exc:
        raise ValueError(f"auth header extraction failed: {exc}") from exc
    try:
        identifier = decode_identifier(macaroon.id)
    except ValueError as exc:
        raise ValueError(f"token ID decoding failed: {exc}") from exc
    token_id = TokenID(identifier.token_id)
    _log.debug("Decoded client/token ID %s from auth header", token_id)
    return token_id


def _token_from_context(ctx: Mapping[Any, Any]) -> TokenID:
    return token_from_metadata(ctx.get(KEY_METADATA))


class _WrappedStream:
    """A server stream whose context is replaced."""

    def __init__(self, stream: Any, context: Mapping[Any, Any]) -> None:
        self._stream = stream
        self.context = context

    def __getattr__(self, name: str) -> Any:
        return getattr(self._stream, name)


class ServerInterceptor:
    """Attaches the token ID of a presented LSAT to the request context.

    Requests without a readable LSAT are passed on unchanged.
    """

    def unary_interceptor(self, ctx: Mapping[Any, Any], request: Any,
                          handler: Callable[[Mapping[Any, Any], Any], Any]) -> Any:
        try:
            token_id = _token_from_context(ctx)
        except ValueError as exc:
            _log.debug("No token extracted, error was: %s", exc)
            return handler(ctx, request)
        return handler(add_to_context(ctx, KEY_TOKEN_ID, token_id), request)

    def stream_interceptor(self, server: Any, stream: Any,
                           handler: Callable[[Any, Any], Any]) -> Any:
        ctx = stream.context
        try:
            token_id = _token_from_context(ctx)
        except ValueError as exc:
            _log.debug("No token extracted, error was: %s", exc)
            return handler(server, stream)
        wrapped = _WrappedStream(stream, add_to_context(ctx, KEY_TOKEN_ID, token_id))
        return handler(server, wrapped)