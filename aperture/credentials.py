"""Request context values and per-call macaroon credentials."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from aperture.macaroon import Macaroon


@dataclass(frozen=True)
class ContextKey:
    """Key under which an LSAT-specific value is kept in a request context."""

    name: str


KEY_TOKEN_ID = ContextKey("tokenid")
KEY_METADATA = ContextKey("metadata")


def from_context(ctx: Mapping[Any, Any], key: ContextKey) -> Any:
    """Return the value stored under key, or None."""
    return ctx.get(key)


def add_to_context(ctx: Mapping[Any, Any], key: ContextKey,
                   value: Any) -> dict[Any, Any]:
    """Return a new context holding value under key; ctx is left unchanged."""
    return {**ctx, key: value}


class MacaroonCredential:
    """Per-call credential carrying a copy of a macaroon."""

    def __init__(self, macaroon: Macaroon, allow_insecure: bool = False) -> None:
        self.macaroon = macaroon.clone()
        # Only for insecure channels that are tunnelled, such as onion services.
        self.allow_insecure = allow_insecure

    def require_transport_security(self) -> bool:
        return not self.allow_insecure

    def get_request_metadata(self) -> dict[str, str]:
        return {"macaroon": self.macaroon.to_bytes().hex()}