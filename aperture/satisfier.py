"""Satisfiers for the services, capabilities and timeout caveats."""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime

from aperture.caveat import Caveat, Satisfier
from aperture.service import (
    COND_CAPABILITIES_SUFFIX,
    COND_SERVICES,
    COND_TIMEOUT_SUFFIX,
    decode_services_caveat_value,
)

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1


def _parse_int64(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid syntax: {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"value out of range: {text!r}")
    return value


def new_services_satisfier(target_service: str) -> Satisfier:
    """Satisfier that authorizes access to target_service."""

    def satisfy_previous(prev: Caveat, cur: Caveat) -> None:
        allowed = {s.name for s in decode_services_caveat_value(prev.value)}
        for service in decode_services_caveat_value(cur.value):
            if service.name not in allowed:
                raise PermissionError(
                    f"service {service.name} not previously allowed")

    def satisfy_final(caveat: Caveat) -> None:
        services = decode_services_caveat_value(caveat.value)
        if not any(s.name == target_service for s in services):
            raise PermissionError(
                f"target service {target_service} not authorized")

    return Satisfier(COND_SERVICES, satisfy_previous, satisfy_final)


def new_capabilities_satisfier(service: str,
                               target_capability: str) -> Satisfier:
    """Satisfier that authorizes target_capability of a service."""

    def satisfy_previous(prev: Caveat, cur: Caveat) -> None:
        allowed = set(prev.value.split(","))
        for capability in cur.value.split(","):
            if capability not in allowed:
                raise PermissionError(
                    f"capability {capability} not previously allowed")

    def satisfy_final(caveat: Caveat) -> None:
        if target_capability not in caveat.value.split(","):
            raise PermissionError(
                f"target capability {target_capability} not authorized")

    return Satisfier(service + COND_CAPABILITIES_SUFFIX, satisfy_previous,
                     satisfy_final)


def new_timeout_satisfier(service: str,
                          now: Callable[[], datetime]) -> Satisfier:
    """Satisfier that rejects expired LSATs and loosening expirations.

    Caveat values are expiry times in Unix seconds; each later caveat of
    the condition must expire no later than the one before it.
    """
    condition = service + COND_TIMEOUT_SUFFIX

    def satisfy_previous(prev: Caveat, cur: Caveat) -> None:
        try:
            prev_value = _parse_int64(prev.value)
        except ValueError as exc:
            raise ValueError(
                f"error parsing previous caveat value: {exc}") from exc
        try:
            cur_value = _parse_int64(cur.value)
        except ValueError as exc:
            raise ValueError(f"error parsing caveat value: {exc}") from exc
        if prev_value < cur_value:
            raise PermissionError(
                f"{condition} caveat violates increasing restrictiveness")

    def satisfy_final(caveat: Caveat) -> None:
        try:
            expiry = _parse_int64(caveat.value)
        except ValueError as exc:
            raise ValueError(
                f"caveat value not a valid integer: {exc}") from exc
        if now().timestamp() < expiry:
            return
        raise PermissionError(
            "not authorized to access service. LSAT has expired")

    return Satisfier(condition, satisfy_previous, satisfy_final)