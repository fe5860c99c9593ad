"""Caveats that restrict the use of an LSAT and their verification."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from aperture.macaroon import Macaroon

PREIMAGE_KEY = "preimage"


class InvalidCaveatError(ValueError):
    """Raised when a caveat string is not of the form condition=value."""

    def __init__(self, message: str = 'caveat must be of the form "condition=value"'):
        super().__init__(message)


@dataclass(frozen=True)
class Caveat:
    """A condition and the value used to satisfy it."""

    condition: str
    value: str

    def __str__(self) -> str:
        return encode_caveat(self)


@dataclass(frozen=True)
class Satisfier:
    """Checks caveats of one condition; the callables raise when unsatisfied."""

    condition: str
    satisfy_previous: Callable[[Caveat, Caveat], None] | None = None
    satisfy_final: Callable[[Caveat], None] | None = None


def encode_caveat(caveat: Caveat) -> str:
    return f"{caveat.condition}={caveat.value}"


def decode_caveat(text: str) -> Caveat:
    condition, sep, value = text.partition("=")
    if not sep:
        raise InvalidCaveatError()
    return Caveat(condition, value)


def add_first_party_caveats(macaroon: Macaroon, *caveats: Caveat) -> None:
    for caveat in caveats:
        macaroon.add_first_party_caveat(encode_caveat(caveat).encode("utf-8"))


def has_caveat(macaroon: Macaroon, condition: str) -> str | None:
    """Return the value of the last caveat with the condition, or None."""
    value = None
    for raw in macaroon.caveats():
        try:
            caveat = decode_caveat(raw.decode("utf-8", errors="surrogateescape"))
        except InvalidCaveatError:
            continue
        if caveat.condition == condition:
            value = caveat.value
    return value


def verify_caveats(caveats: Iterable[Caveat], *satisfiers: Satisfier) -> None:
    """Check every caveat that has a satisfier; raise on the first failure.

    Caveats must be given in their macaroon order so each one is checked
    against the one before it of the same condition.
    """
    by_condition = {s.condition: s for s in satisfiers}
    relevant: dict[str, list[Caveat]] = {}
    for caveat in caveats:
        if caveat.condition in by_condition:
            relevant.setdefault(caveat.condition, []).append(caveat)

    for condition, chain in relevant.items():
        satisfier = by_condition[condition]
        if satisfier.satisfy_previous is not None:
            for previous, current in zip(chain, chain[1:]):
                satisfier.satisfy_previous(previous, current)
        if satisfier.satisfy_final is not None:
            satisfier.satisfy_final(chain[-1])