"""Client-side interception that pays for LSAT tokens automatically."""

from __future__ import annotations

import abc
import base64
import binascii
import enum
import logging
import re
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from aperture.credentials import MacaroonCredential
from aperture.invoice import InvoiceError, decode_invoice
from aperture.store import NoTokenError, TokenStore
from aperture.token import ZERO_PREIMAGE, Token, token_from_challenge

GRPC_ERR_CODE = 13
"""The INTERNAL status code a server uses to ask for payment."""

GRPC_ERR_CODE_NEW = 2
"""The UNKNOWN status code some servers use to ask for payment."""

GRPC_ERR_MESSAGE = "payment required"
AUTH_HEADER = "WWW-Authenticate"
DEFAULT_MAX_COST_SATS = 1000
DEFAULT_MAX_ROUTING_FEE_SATS = 10
PAYMENT_TIMEOUT = 60.0

MANUAL_RETRY_HINT = ("consider removing pending token file if error "
                     "persists. use 'listauth' command to find out token "
                     "file name")

_AUTH_HEADER_RE = re.compile(r'LSAT macaroon="(.*?)", invoice="(.*?)"')

_log = logging.getLogger(__name__)


class RpcStatusError(Exception):
    """An RPC failure carrying a status code and message."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"rpc error: code = {code} desc = {message}")
        self.code = code
        self.message = message


class PaymentState(enum.IntEnum):
    UNKNOWN = 0
    IN_FLIGHT = 1
    SUCCEEDED = 2
    FAILED = 3
    INITIATED = 4


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a payment; amounts are in satoshis."""

    preimage: bytes
    paid_amt: int = 0
    paid_fee: int = 0


@dataclass(frozen=True)
class PaymentStatus:
    """A payment status update; amounts are in millisatoshis."""

    state: PaymentState
    preimage: bytes = ZERO_PREIMAGE
    value: int = 0
    fee: int = 0


class LightningClient(abc.ABC):
    """The node operations needed to pay for tokens."""

    @abc.abstractmethod
    def pay_invoice(self, invoice: str, max_fee_sat: int,
                    timeout: float) -> PaymentResult:
        """Pay an invoice; raise on failure and TimeoutError on timeout."""

    @abc.abstractmethod
    def track_payment(self, payment_hash: bytes,
                      timeout: float) -> Iterable[PaymentStatus]:
        """Yield status updates of the payment with the given hash."""


class _PaymentFailedTerminally(Exception):
    """The payment failed for good and will never succeed."""


@dataclass
class _InterceptContext:
    token: Token | None = None
    credentials: MacaroonCredential | None = None
    trailer: dict[str, Any] = field(default_factory=dict)


def _metadata_values(metadata: Mapping[str, Any], name: str) -> list[str]:
    target = name.lower()
    values: list[str] = []
    for key, value in metadata.items():
        if key.lower() == target:
            values.extend([value] if isinstance(value, str) else value)
    return values


def is_payment_required(error: BaseException | None) -> bool:
    """Whether an error is the server's request to pay for a token."""
    if not isinstance(error, RpcStatusError):
        return False
    return (GRPC_ERR_MESSAGE in error.message.lower()
            and error.code in (GRPC_ERR_CODE, GRPC_ERR_CODE_NEW))


class ClientInterceptor:
    """Attaches a stored LSAT to calls and pays for one when challenged.

    Invokers are called as invoker(method, request, credentials=...,
    trailer=..., timeout=...) and streamers as streamer(method,
    credentials=..., trailer=...). The server's response headers are
    expected in the trailer dict.
    """

    def __init__(self, lnd: LightningClient, store: TokenStore,
                 call_timeout: float,
                 max_cost: int = DEFAULT_MAX_COST_SATS,
                 max_fee: int = DEFAULT_MAX_ROUTING_FEE_SATS,
                 allow_insecure: bool = False) -> None:
        self.lnd = lnd
        self.store = store
        self.call_timeout = call_timeout
        self.max_cost = max_cost
        self.max_fee = max_fee
        self.allow_insecure = allow_insecure
        # Serializes calls so a token is never paid for twice.
        self._lock = threading.Lock()

    def unary_interceptor(self, method: str, request: Any,
                          invoker: Callable[..., Any]) -> Any:
        with self._lock:
            ictx = self._new_intercept_context()
            try:
                return invoker(method, request, credentials=ictx.credentials,
                               trailer=ictx.trailer, timeout=self.call_timeout)
            except Exception as exc:
                if not is_payment_required(exc):
                    raise
            self._handle_payment(ictx)
            return invoker(method, request, credentials=ictx.credentials,
                           trailer=ictx.trailer, timeout=self.call_timeout)

    def stream_interceptor(self, method: str,
                           streamer: Callable[..., Any]) -> Any:
        with self._lock:
            ictx = self._new_intercept_context()
            try:
                return streamer(method, credentials=ictx.credentials,
                                trailer=ictx.trailer)
            except Exception as exc:
                if not is_payment_required(exc):
                    raise
            self._handle_payment(ictx)
            return streamer(method, credentials=ictx.credentials,
                            trailer=ictx.trailer)

    def _new_intercept_context(self) -> _InterceptContext:
        try:
            token = self.store.current_token()
        except NoTokenError:
            token = None
        except Exception as exc:
            _log.error("Failed to get token from store: %s", exc)
            raise RuntimeError(
                f"getting token from store failed: {exc}") from exc

        ictx = _InterceptContext(token=token)
        # A pending token is never sent; it is known not to be valid.
        if token is not None and not token.is_pending():
            self._add_lsat_credentials(ictx)
        return ictx

    def _handle_payment(self, ictx: _InterceptContext) -> None:
        if ictx.token is not None and ictx.token.is_pending():
            _log.info("Payment of LSAT token is required, resuming/tracking "
                      "previous payment from pending LSAT token")
            try:
                self._track_payment(ictx.token)
            except _PaymentFailedTerminally:
                ictx.token = None
                try:
                    self.store.remove_pending_token()
                except Exception as exc:
                    raise RuntimeError(
                        "error removing pending token, cannot retry "
                        f"payment: {exc}") from exc
                _log.info("Retrying payment of LSAT token invoice")
                ictx.token = self._pay_lsat_token(ictx.trailer)
        elif ictx.token is None:
            _log.info("Payment of LSAT token is required, paying invoice")
            ictx.token = self._pay_lsat_token(ictx.trailer)
        else:
            _log.debug("Found valid LSAT token to add to request")
        self._add_lsat_credentials(ictx)

    def _add_lsat_credentials(self, ictx: _InterceptContext) -> None:
        if ictx.token is None:
            raise ValueError("cannot add nil token to context")
        ictx.credentials = MacaroonCredential(ictx.token.paid_macaroon(),
                                              self.allow_insecure)

    def _pay_lsat_token(self, trailer: Mapping[str, Any]) -> Token:
        values = _metadata_values(trailer, AUTH_HEADER)
        if not values:
            raise ValueError("auth header not found in response")
        match = _AUTH_HEADER_RE.search(values[0])
        if match is None:
            raise ValueError(f"invalid auth header format: {values[0]}")

        mac_base64, invoice_text = match.group(1), match.group(2)
        try:
            mac_bytes = base64.b64decode(mac_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(
                f"base64 decode of macaroon failed: {exc}") from exc
        try:
            invoice = decode_invoice(invoice_text)
        except InvoiceError as exc:
            raise ValueError(f"unable to decode invoice: {exc}") from exc

        max_cost_msat = self.max_cost * 1000
        if invoice.amount_msat is not None and invoice.amount_msat > max_cost_msat:
            raise ValueError(
                "cannot pay for LSAT automatically, cost of "
                f"{invoice.amount_msat} msat exceeds configured max cost of "
                f"{max_cost_msat} msat")

        # Keep a pending token so an interrupted payment can be resumed.
        try:
            token = token_from_challenge(mac_bytes, invoice.payment_hash)
        except ValueError as exc:
            raise ValueError(f"unable to create token: {exc}") from exc
        try:
            self.store.store_token(token)
        except Exception as exc:
            raise RuntimeError(
                f"unable to store pending token: {exc}") from exc

        try:
            result = self.lnd.pay_invoice(invoice_text, self.max_fee,
                                          PAYMENT_TIMEOUT)
        except TimeoutError as exc:
            raise TimeoutError("payment timed out. try again to track "
                               f"payment. {MANUAL_RETRY_HINT}") from exc

        token.preimage = bytes(result.preimage)
        token.amount_paid = result.paid_amt * 1000
        token.routing_fee_paid = result.paid_fee * 1000
        self.store.store_token(token)
        return token

    def _track_payment(self, token: Token) -> None:
        try:
            updates = iter(self.lnd.track_payment(token.payment_hash,
                                                  PAYMENT_TIMEOUT))
        except Exception as exc:
            _log.error("Could not call TrackPayment on lnd: %s", exc)
            raise RuntimeError(
                f"track payment call to lnd failed: {exc}") from exc

        while True:
            try:
                status = next(updates)
            except StopIteration:
                raise TimeoutError(
                    f"payment tracking timed out. {MANUAL_RETRY_HINT}") from None
            except TimeoutError as exc:
                raise TimeoutError(
                    f"payment tracking timed out. {MANUAL_RETRY_HINT}") from exc
            except Exception as exc:
                raise RuntimeError(f"payment tracking failed: {exc}. "
                                   f"{MANUAL_RETRY_HINT}") from exc

            if status.state == PaymentState.SUCCEEDED:
                token.preimage = bytes(status.preimage)
                token.amount_paid = status.value
                token.routing_fee_paid = status.fee
                self.store.store_token(token)
                return
            if status.state == PaymentState.IN_FLIGHT:
                continue
            if status.state == PaymentState.FAILED:
                raise _PaymentFailedTerminally()
            raise RuntimeError(
                f"payment tracking failed with state "
                f"{PaymentState(status.state).name}. {MANUAL_RETRY_HINT}")