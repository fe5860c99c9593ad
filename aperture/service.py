"""Services, capabilities and timeout caveats of LSAT-enabled services."""

from __future__ import annotations

import enum
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from aperture.caveat import Caveat

COND_SERVICES = "services"
COND_CAPABILITIES_SUFFIX = "_capabilities"
COND_TIMEOUT_SUFFIX = "_valid_until"

_INT_RE = re.compile(r"[+-]?[0-9]+")


class NoServicesError(ValueError):
    """Raised when a services caveat holds no services."""

    def __init__(self, message: str = "no services found"):
        super().__init__(message)


class InvalidServiceError(ValueError):
    """Raised when a service is not of the form name:tier."""

    def __init__(self, detail: str | None = None):
        message = 'service must be of the form "name:tier"'
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ServiceTier(enum.IntEnum):
    BASE = 0


@dataclass(frozen=True)
class Service:
    """An LSAT-enabled service; the price is in satoshis."""

    name: str
    tier: int = ServiceTier.BASE
    price: int = 0


def new_services_caveat(*services: Service) -> Caveat:
    return Caveat(COND_SERVICES, encode_services_caveat_value(*services))


def encode_services_caveat_value(*services: Service) -> str:
    if not services:
        raise NoServicesError()
    parts = []
    for service in services:
        if not service.name:
            raise ValueError("missing service name")
        parts.append(f"{service.name}:{int(service.tier) & 0xFF}")
    return ",".join(parts)


def decode_services_caveat_value(value: str) -> list[Service]:
    if not value:
        raise NoServicesError()
    services = []
    for raw in value.split(","):
        info = raw.split(":")
        if len(info) != 2:
            raise InvalidServiceError()
        name, tier_text = info
        if not name:
            raise InvalidServiceError("empty name")
        if not _INT_RE.fullmatch(tier_text):
            raise InvalidServiceError(f"invalid tier {tier_text!r}")
        tier = int(tier_text)
        if not -(2 ** 63) <= tier < 2 ** 63:
            raise InvalidServiceError(f"tier {tier_text!r} out of range")
        services.append(Service(name=name, tier=tier & 0xFF))
    return services


def new_capabilities_caveat(service_name: str, capabilities: str) -> Caveat:
    return Caveat(service_name + COND_CAPABILITIES_SUFFIX, capabilities)


def new_timeout_caveat(service_name: str, num_seconds: int,
                       now: Callable[[], datetime]) -> Caveat:
    """Caveat that makes a macaroon valid for num_seconds after now()."""
    expiry = math.floor(now().timestamp()) + int(num_seconds)
    return Caveat(service_name + COND_TIMEOUT_SUFFIX, str(expiry))