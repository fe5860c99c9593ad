import pytest

from aperture.credentials import KEY_METADATA, KEY_TOKEN_ID, from_context
from aperture.header import set_header
from aperture.identifier import Identifier, TokenID, encode_identifier
from aperture.macaroon import Macaroon
from aperture.server_interceptor import ServerInterceptor, token_from_metadata

PREIMAGE = bytes([1, 2, 3, 4, 5]) + bytes(27)
TOKEN_ID = TokenID(bytes(range(32)))


def make_mac(identifier: bytes | None = None) -> Macaroon:
    if identifier is None:
        identifier = encode_identifier(
            Identifier(payment_hash=bytes(32), token_id=TOKEN_ID))
    root_key = b"secret"
    return Macaroon(root_key, identifier, "LSAT")


def make_metadata(mac: Macaroon) -> dict:
    headers = {}
    set_header(headers, mac, PREIMAGE)
    return {"authorization": [headers["Authorization"]]}


class FakeStream:
    def __init__(self, context):
        self.context = context
        self.label = "stream"


def test_token_from_metadata():
    assert token_from_metadata(make_metadata(make_mac())) == TOKEN_ID


def test_token_from_metadata_string_value():
    md = make_metadata(make_mac())
    md["authorization"] = md["authorization"][0]
    assert token_from_metadata(md) == TOKEN_ID


def test_no_metadata():
    with pytest.raises(ValueError, match="no metadata"):
        token_from_metadata(None)


def test_missing_authorization():
    with pytest.raises(ValueError, match="auth header extraction failed"):
        token_from_metadata({"other": ["x"]})


def test_unknown_identifier_version():
    mac = make_mac(b"\x00\x01" + bytes(64))
    with pytest.raises(ValueError, match="token ID decoding failed"):
        token_from_metadata(make_metadata(mac))


def test_unary_attaches_token_id():
    seen = {}

    def handler(ctx, request):
        seen["ctx"] = ctx
        return request * 2

    ctx = {KEY_METADATA: make_metadata(make_mac())}
    result = ServerInterceptor().unary_interceptor(ctx, 21, handler)
    assert result == 42
    assert from_context(seen["ctx"], KEY_TOKEN_ID) == TOKEN_ID
    assert from_context(ctx, KEY_TOKEN_ID) is None


def test_unary_without_token_passes_context_through():
    seen = {}

    def handler(ctx, request):
        seen["ctx"] = ctx
        return "done"

    ctx = {}
    assert ServerInterceptor().unary_interceptor(ctx, None, handler) == "done"
    assert seen["ctx"] is ctx


def test_stream_wraps_context():
    seen = {}

    def handler(server, stream):
        seen["server"] = server
        seen["stream"] = stream
        return "ok"

    stream = FakeStream({KEY_METADATA: make_metadata(make_mac())})
    assert ServerInterceptor().stream_interceptor("srv", stream, handler) == "ok"
    wrapped = seen["stream"]
    assert seen["server"] == "srv"
    assert from_context(wrapped.context, KEY_TOKEN_ID) == TOKEN_ID
    assert wrapped.label == "stream"
    assert from_context(stream.context, KEY_TOKEN_ID) is None


def test_stream_without_token_passes_stream_through():
    seen = {}

    def handler(server, stream):
        seen["stream"] = stream

    stream = FakeStream({KEY_METADATA: {"authorization": ["LSAT bad"]}})
    ServerInterceptor().stream_interceptor(None, stream, handler)
    assert seen["stream"] is stream