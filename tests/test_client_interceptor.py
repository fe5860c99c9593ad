import base64
from dataclasses import dataclass

import pytest

from aperture.client_interceptor import (
    AUTH_HEADER,
    DEFAULT_MAX_COST_SATS,
    DEFAULT_MAX_ROUTING_FEE_SATS,
    GRPC_ERR_CODE,
    GRPC_ERR_CODE_NEW,
    GRPC_ERR_MESSAGE,
    ClientInterceptor,
    LightningClient,
    PaymentResult,
    PaymentState,
    PaymentStatus,
    RpcStatusError,
    is_payment_required,
)
from aperture.macaroon import Macaroon
from aperture.store import NoTokenError, TokenStore
from aperture.token import ZERO_PREIMAGE, Token

TEST_TIMEOUT = 5.0
PAID_PREIMAGE = bytes([1, 2, 3, 4, 5]) + bytes(27)

TEST_INVOICE = (
    "lntb5u1p0pskpmpp5jzw9xvdast2g5lm5tswq6n64t2epe3f4xav43dyd"
    "239qr8h3yllqdqqcqzpgsp5m8sfjqgugthk66q3tr4gsqr5rh740jrq9x4l0"
    "kvj5e77nmwqvpnq9qy9qsq72afzu7sfuppzqg3q2pn49hlh66rv7w60h2rua"
    "hx857g94s066yzxcjn4yccqc79779sd232v9ewluvu0tmusvht6r99rld8xs"
    "k287cpyac79r"
)


def make_mac():
    return Macaroon(b"aabbccddeeff00112233445566778899", b"AA==", "LSAT")


TEST_MAC = make_mac()
TEST_MAC_BYTES = TEST_MAC.to_bytes()
TEST_MAC_HEX = TEST_MAC_BYTES.hex()


def make_auth_header(mac_bytes):
    encoded = base64.b64encode(mac_bytes).decode()
    return f'LSAT macaroon="{encoded}", invoice="{TEST_INVOICE}"'


def payment_required():
    return RpcStatusError(GRPC_ERR_CODE, GRPC_ERR_MESSAGE)


class MockStore(TokenStore):
    def __init__(self, token=None):
        self.token = token

    def current_token(self):
        if self.token is None:
            raise NoTokenError()
        return self.token

    def all_tokens(self):
        return {"foo": self.token}

    def store_token(self, token):
        self.token = token

    def remove_pending_token(self):
        self.token = None


class Backend:
    def __init__(self):
        self.error = None
        self.auth = ""
        self.call_mds = []
        self.timeouts = []

    def reset(self, error=None, auth=""):
        self.error = error
        self.auth = auth

    def call(self, credentials, trailer):
        self.call_mds.append(
            credentials.get_request_metadata() if credentials else {})
        if self.auth:
            trailer[AUTH_HEADER] = [self.auth]
        if self.error is not None:
            raise self.error


class FakeLightning(LightningClient):
    def __init__(self, backend, track_states=(), pay_error=None):
        self.backend = backend
        self.track_states = list(track_states)
        self.pay_error = pay_error
        self.pay_calls = []
        self.track_calls = []

    def pay_invoice(self, invoice, max_fee_sat, timeout):
        self.pay_calls.append((invoice, max_fee_sat))
        if self.pay_error is not None:
            raise self.pay_error
        self.backend.reset()
        return PaymentResult(preimage=PAID_PREIMAGE, paid_amt=123, paid_fee=345)

    def track_payment(self, payment_hash, timeout):
        self.track_calls.append(payment_hash)
        self.backend.reset()
        for state in self.track_states:
            preimage = PAID_PREIMAGE if state == PaymentState.SUCCEEDED else ZERO_PREIMAGE
            yield PaymentStatus(state=state, preimage=preimage)


def make_token(preimage):
    if preimage is None:
        return None
    return Token(base_mac=TEST_MAC, preimage=preimage)


def run(mode, interceptor, backend):
    if mode == "unary":
        def invoker(method, request, *, credentials, trailer, timeout):
            backend.timeouts.append(timeout)
            backend.call(credentials, trailer)
            return "reply"
        return interceptor.unary_interceptor("/svc/Method", None, invoker)

    def streamer(method, *, credentials, trailer):
        backend.call(credentials, trailer)
        return "stream"
    return interceptor.stream_interceptor("/svc/Method", streamer)


@dataclass
class Case:
    name: str
    initial_preimage: bytes | None
    required: bool
    track_states: tuple = ()
    max_cost: int = DEFAULT_MAX_COST_SATS
    expect_token: bool = False
    expect_error: str = ""
    expect_calls: int = 1
    expect_mac1: bool = False
    expect_mac2: bool = False
    expect_pays: int = 0
    expect_tracks: int = 0


CASES = [
    Case("no auth required happy path", None, False),
    Case("auth required, no token yet", None, True, expect_token=True,
         expect_calls=2, expect_mac2=True, expect_pays=1),
    Case("auth required, has token", PAID_PREIMAGE, False, expect_token=True,
         expect_mac1=True),
    Case("auth required, has pending token", ZERO_PREIMAGE, True,
         track_states=(PaymentState.SUCCEEDED,), expect_token=True,
         expect_calls=2, expect_mac2=True, expect_tracks=1),
    Case("auth required, has pending but expired token", ZERO_PREIMAGE, True,
         track_states=(PaymentState.FAILED,), expect_token=True,
         expect_calls=2, expect_mac2=True, expect_pays=1, expect_tracks=1),
    Case("auth required, no token yet, cost limit", None, True, max_cost=100,
         expect_error="cannot pay for LSAT automatically, cost of 500000 "
                      "msat exceeds configured max cost of 100000 msat"),
]


def assert_macaroon_sent(md):
    assert len(md) == 1
    assert len(md["macaroon"]) > len(TEST_MAC_HEX)


@pytest.mark.parametrize("mode", ["unary", "stream"])
@pytest.mark.parametrize("case", CASES, ids=[c.name for c in CASES])
def test_interceptor(case, mode):
    backend = Backend()
    if case.required:
        backend.reset(payment_required(), make_auth_header(TEST_MAC_BYTES))
    store = MockStore(make_token(case.initial_preimage))
    lnd = FakeLightning(backend, case.track_states)
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT, case.max_cost,
                                    DEFAULT_MAX_ROUTING_FEE_SATS, False)

    if case.expect_error:
        with pytest.raises(ValueError) as info:
            run(mode, interceptor, backend)
        assert case.expect_error in str(info.value)
    else:
        expected = "reply" if mode == "unary" else "stream"
        assert run(mode, interceptor, backend) == expected

    if case.expect_token:
        assert store.current_token().preimage == PAID_PREIMAGE
    else:
        with pytest.raises(NoTokenError):
            store.current_token()

    assert len(backend.call_mds) == case.expect_calls
    if case.expect_mac1:
        assert_macaroon_sent(backend.call_mds[0])
    else:
        assert backend.call_mds[0] == {}
    if case.expect_mac2:
        assert_macaroon_sent(backend.call_mds[1])
    assert len(lnd.pay_calls) == case.expect_pays
    assert len(lnd.track_calls) == case.expect_tracks


def test_paid_amounts_are_recorded_in_msat():
    backend = Backend()
    backend.reset(payment_required(), make_auth_header(TEST_MAC_BYTES))
    store = MockStore()
    lnd = FakeLightning(backend)
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    run("unary", interceptor, backend)
    token = store.current_token()
    assert token.amount_paid == 123 * 1000
    assert token.routing_fee_paid == 345 * 1000
    assert lnd.pay_calls == [(TEST_INVOICE, DEFAULT_MAX_ROUTING_FEE_SATS)]


def test_unary_call_gets_timeout():
    backend = Backend()
    interceptor = ClientInterceptor(FakeLightning(backend), MockStore(),
                                    TEST_TIMEOUT)
    run("unary", interceptor, backend)
    assert backend.timeouts == [TEST_TIMEOUT]


def test_other_errors_propagate():
    backend = Backend()
    backend.reset(RpcStatusError(14, "unavailable"))
    lnd = FakeLightning(backend)
    interceptor = ClientInterceptor(lnd, MockStore(), TEST_TIMEOUT)
    with pytest.raises(RpcStatusError) as info:
        run("unary", interceptor, backend)
    assert info.value.code == 14
    assert len(backend.call_mds) == 1
    assert lnd.pay_calls == []


def test_missing_auth_header():
    backend = Backend()
    backend.reset(payment_required())
    store = MockStore()
    lnd = FakeLightning(backend)
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    with pytest.raises(ValueError) as info:
        run("stream", interceptor, backend)
    assert "auth header not found in response" in str(info.value)
    assert len(backend.call_mds) == 1
    assert lnd.pay_calls == []
    assert store.token is None


def test_invalid_auth_header_format():
    backend = Backend()
    backend.reset(payment_required(), "LSAT garbage")
    store = MockStore()
    lnd = FakeLightning(backend)
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    with pytest.raises(ValueError) as info:
        run("unary", interceptor, backend)
    message = str(info.value)
    assert "invalid auth header format" in message
    assert "LSAT garbage" in message
    assert lnd.pay_calls == []
    assert store.token is None


def test_payment_timeout_keeps_pending_token():
    backend = Backend()
    backend.reset(payment_required(), make_auth_header(TEST_MAC_BYTES))
    store = MockStore()
    lnd = FakeLightning(backend, pay_error=TimeoutError("slow"))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    with pytest.raises(TimeoutError, match="payment timed out"):
        run("unary", interceptor, backend)
    assert store.current_token().is_pending()


def test_tracking_unknown_state_fails():
    backend = Backend()
    backend.reset(payment_required(), make_auth_header(TEST_MAC_BYTES))
    store = MockStore(make_token(ZERO_PREIMAGE))
    lnd = FakeLightning(backend, track_states=(PaymentState.UNKNOWN,))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    with pytest.raises(RuntimeError) as info:
        run("unary", interceptor, backend)
    assert "UNKNOWN" in str(info.value)
    assert len(lnd.track_calls) == 1
    assert lnd.pay_calls == []
    assert store.current_token().is_pending()
    assert len(backend.call_mds) == 1


def test_tracking_without_conclusion_times_out():
    backend = Backend()
    backend.reset(payment_required(), make_auth_header(TEST_MAC_BYTES))
    store = MockStore(make_token(ZERO_PREIMAGE))
    lnd = FakeLightning(backend, track_states=(PaymentState.IN_FLIGHT,))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    with pytest.raises(TimeoutError, match="payment tracking timed out"):
        run("stream", interceptor, backend)
    assert store.current_token().is_pending()


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (RpcStatusError(GRPC_ERR_CODE, GRPC_ERR_MESSAGE), True),
        (RpcStatusError(GRPC_ERR_CODE_NEW, GRPC_ERR_MESSAGE), True),
        (RpcStatusError(GRPC_ERR_CODE, "Payment Required"), True),
        (RpcStatusError(14, GRPC_ERR_MESSAGE), False),
        (RpcStatusError(GRPC_ERR_CODE, "something else"), False),
        (ValueError(GRPC_ERR_MESSAGE), False),
        (None, False),
    ],
)
def test_is_payment_required(error, expected):
    assert is_payment_required(error) is expected