import pytest

from aperture.macaroon import Macaroon
from aperture.store import (
    STORE_FILE_NAME,
    STORE_FILE_NAME_PENDING,
    FileStore,
    NoReplaceError,
    NoTokenError,
)
from aperture.token import ZERO_PREIMAGE, Token

PAID_PREIMAGE = bytes([1, 2, 3, 4, 5]) + bytes(27)


def make_mac():
    return Macaroon(b"aabbccddeeff00112233445566778899", b"AA==", "LSAT")


def test_file_store(tmp_path):
    paid_token = Token(base_mac=make_mac(), preimage=PAID_PREIMAGE)
    pending_token = Token(base_mac=make_mac(), preimage=ZERO_PREIMAGE)

    store = FileStore(tmp_path)

    with pytest.raises(NoTokenError):
        store.current_token()
    assert store.all_tokens() == {}

    store.store_token(pending_token)
    assert (tmp_path / STORE_FILE_NAME_PENDING).exists()
    token = store.current_token()
    assert token.base_mac == pending_token.base_mac
    assert token.is_pending()
    tokens = store.all_tokens()
    assert len(tokens) == 1
    assert all(t.base_mac == pending_token.base_mac for t in tokens.values())

    store.store_token(paid_token)
    assert (tmp_path / STORE_FILE_NAME).exists()
    assert not (tmp_path / STORE_FILE_NAME_PENDING).exists()
    token = store.current_token()
    assert token.base_mac == paid_token.base_mac
    assert token.preimage == PAID_PREIMAGE
    tokens = store.all_tokens()
    assert len(tokens) == 1
    assert all(t.base_mac == paid_token.base_mac for t in tokens.values())

    with pytest.raises(NoReplaceError):
        store.store_token(pending_token)
    with pytest.raises(NoReplaceError):
        store.store_token(paid_token)


def test_store_creates_directory(tmp_path):
    target = tmp_path / "nested" / "dir"
    store = FileStore(target)
    assert target.is_dir()
    store.store_token(Token(base_mac=make_mac(), preimage=PAID_PREIMAGE))
    assert (target / STORE_FILE_NAME).exists()
    assert store.current_token().preimage == PAID_PREIMAGE


def test_paid_token_must_match_pending(tmp_path):
    store = FileStore(tmp_path)
    store.store_token(Token(base_mac=make_mac(), payment_hash=bytes(32)))
    other = Token(base_mac=make_mac(), payment_hash=b"\x01" * 32,
                  preimage=PAID_PREIMAGE)
    with pytest.raises(ValueError, match="doesn't match"):
        store.store_token(other)
    assert store.current_token().is_pending()


def test_remove_pending_token(tmp_path):
    store = FileStore(tmp_path)
    with pytest.raises(NoTokenError):
        store.remove_pending_token()
    store.store_token(Token(base_mac=make_mac()))
    store.remove_pending_token()
    assert not (tmp_path / STORE_FILE_NAME_PENDING).exists()
    with pytest.raises(NoTokenError):
        store.current_token()


def test_pending_token_can_be_replaced_after_removal(tmp_path):
    store = FileStore(tmp_path)
    store.store_token(Token(base_mac=make_mac(), payment_hash=bytes(32)))
    store.remove_pending_token()
    fresh = Token(base_mac=make_mac(), payment_hash=b"\x02" * 32)
    store.store_token(fresh)
    assert store.current_token().payment_hash == fresh.payment_hash


def test_all_tokens_ignores_other_files(tmp_path):
    (tmp_path / "unrelated.txt").write_bytes(b"data")
    store = FileStore(tmp_path)
    store.store_token(Token(base_mac=make_mac(), preimage=PAID_PREIMAGE))
    tokens = store.all_tokens()
    assert list(tokens) == [str(tmp_path / STORE_FILE_NAME)]


def test_error_messages():
    assert str(NoTokenError()) == "no token in store"
    assert str(NoReplaceError()).startswith(
        "won't replace existing paid token with new token.")