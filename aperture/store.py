"""Persistent storage of the client's current LSAT token."""

from __future__ import annotations

import abc
import contextlib
import os
from pathlib import Path

from aperture.token import Token, deserialize_token, serialize_token

STORE_FILE_NAME = "lsat.token"
STORE_FILE_NAME_PENDING = "lsat.token.pending"

_MANUAL_RETRY_HINT = ("consider removing pending token file if error "
                      "persists. use 'listauth' command to find out token "
                      "file name")


class NoTokenError(LookupError):
    """Raised when the store does not hold a token."""

    def __init__(self, message: str = "no token in store"):
        super().__init__(message)


class NoReplaceError(ValueError):
    """Raised when a token would replace an existing paid token."""

    def __init__(self) -> None:
        super().__init__("won't replace existing paid token with new token. "
                         + _MANUAL_RETRY_HINT)


class TokenStore(abc.ABC):
    """Storage for LSAT tokens."""

    @abc.abstractmethod
    def current_token(self) -> Token:
        """Return the current token or raise NoTokenError."""

    @abc.abstractmethod
    def all_tokens(self) -> dict[str, Token]:
        """Return every known token keyed by its storage name."""

    @abc.abstractmethod
    def store_token(self, token: Token) -> None:
        """Save a token to the store."""

    @abc.abstractmethod
    def remove_pending_token(self) -> None:
        """Remove the pending token or raise NoTokenError."""


def _read_token_file(path: Path) -> Token:
    return deserialize_token(path.read_bytes())


def _write_private_file(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


class FileStore(TokenStore):
    """Keeps one token, pending or paid, in files inside a directory."""

    def __init__(self, store_dir: str | os.PathLike[str]) -> None:
        directory = Path(store_dir)
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.file_name = directory / STORE_FILE_NAME
        self.file_name_pending = directory / STORE_FILE_NAME_PENDING

    def current_token(self) -> Token:
        if self.file_name.exists():
            return _read_token_file(self.file_name)
        if self.file_name_pending.exists():
            return _read_token_file(self.file_name_pending)
        raise NoTokenError()

    def all_tokens(self) -> dict[str, Token]:
        directory = self.file_name.parent
        return {
            str(path): _read_token_file(path)
            for path in sorted(directory.iterdir())
            if path.name.startswith(STORE_FILE_NAME)
        }

    def store_token(self, token: Token) -> None:
        """Save a token; a pending token may only be replaced by its paid form."""
        data = serialize_token(token)
        try:
            current = self.current_token()
        except NoTokenError:
            target = self.file_name_pending if token.is_pending() else self.file_name
            _write_private_file(target, data)
            return

        if not (current.is_pending() and not token.is_pending()):
            raise NoReplaceError()
        if bytes(current.payment_hash) != bytes(token.payment_hash):
            raise ValueError(
                "new paid token doesn't match existing pending token")

        # Write the paid token first so the pending one survives a failure.
        _write_private_file(self.file_name, data)
        with contextlib.suppress(OSError):
            self.file_name_pending.unlink()

    def remove_pending_token(self) -> None:
        if not self.file_name_pending.exists():
            raise NoTokenError()
        self.file_name_pending.unlink()