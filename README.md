# aperture

Building blocks for LSAT (Lightning Service Authentication Token) based
access control: macaroons, caveats and their verification, token
identifiers, token storage, HTTP header handling and call interceptors for
both sides of a connection. It has no dependencies outside the standard
library.

## Modules

- `aperture.macaroon` – `Macaroon`, a bearer credential whose HMAC-SHA256
  signature chains over its identifier and first-party caveats. It supports
  `add_first_party_caveat`, `caveats`, `clone`, `to_bytes` and
  `Macaroon.from_bytes` (version 2 binary encoding). Bad input raises
  `MacaroonError`.
- `aperture.caveat` – `Caveat` (condition and value), `encode_caveat`,
  `decode_caveat`, `add_first_party_caveats`, `has_caveat` (the value of the
  last caveat with a condition, or `None`) and `verify_caveats`, which checks
  every caveat that has a matching `Satisfier`, each one against the one
  before it of the same condition, then the last one on its own.
- `aperture.service` – `Service`, `ServiceTier`, `new_services_caveat`,
  `encode_services_caveat_value`, `decode_services_caveat_value`,
  `new_capabilities_caveat` and `new_timeout_caveat`. Services are written as
  `name:tier` separated by commas.
- `aperture.satisfier` – `new_services_satisfier`,
  `new_capabilities_satisfier` and `new_timeout_satisfier`. A failed check
  raises `PermissionError`; an unreadable value raises `ValueError`.
- `aperture.identifier` – `Identifier`, `TokenID` (32 bytes, hex as text,
  `TokenID.from_hex`), `encode_identifier` and `decode_identifier`. Only
  version 0 is known; others raise `UnknownVersionError`.
- `aperture.token` – `Token`, holding the base macaroon, payment hash,
  preimage, amounts paid in millisatoshis and creation time.
  `paid_macaroon` adds the preimage as a `preimage` caveat; a token whose
  preimage is all zeros `is_pending`. `token_from_challenge`,
  `serialize_token` and `deserialize_token` build and encode tokens.
- `aperture.store` – the abstract `TokenStore` and `FileStore`, which keeps
  one token, pending or paid, in a directory.
- `aperture.header` – `from_header` reads a macaroon and preimage from the
  `Authorization` header (LSAT scheme, base64 macaroon and hex preimage
  separated by a colon) or from a hex macaroon in `Grpc-Metadata-Macaroon` or
  `Macaroon` that carries a `preimage` caveat. `set_header` writes the
  `Authorization` form. Failures raise `AuthHeaderError`.
- `aperture.credentials` – `ContextKey`, `from_context`, `add_to_context`
  (contexts are plain mappings; a new one is returned) and
  `MacaroonCredential`, which gives a hex-encoded macaroon as request
  metadata.
- `aperture.server_interceptor` – `ServerInterceptor` and
  `token_from_metadata`. Incoming metadata is looked up in the context under
  `KEY_METADATA`; when it holds a readable LSAT, the token ID is added under
  `KEY_TOKEN_ID` before the handler runs. Otherwise the call passes on
  unchanged.
- `aperture.invoice` – `decode_invoice` parses a BOLT 11 payment request into
  an `Invoice` (amount in millisatoshis, payment hash and tagged fields). The
  checksum is verified, the signature is not. Errors raise `InvoiceError`.
- `aperture.client_interceptor` – `ClientInterceptor` attaches a stored paid
  token to each call. When the call fails with a "payment required"
  `RpcStatusError` (see `is_payment_required`), it reads the challenge from
  the `WWW-Authenticate` trailer, checks the invoice amount against the
  configured maximum cost, stores a pending token, pays through a
  `LightningClient` and retries. A pending token left by an interrupted
  payment is tracked first; if that payment failed for good, the pending
  token is removed and a new one is paid for. Invokers are called as
  `invoker(method, request, credentials=..., trailer=..., timeout=...)`.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Example: caveats

```python
from aperture.caveat import decode_caveat, encode_caveat

caveat = decode_caveat("expiration=1337")
assert encode_caveat(caveat) == "expiration=1337"
```

A string without `=` raises `InvalidCaveatError`. Everything after the first
`=` is the value, so `"expiration=1337="` decodes and encodes back unchanged.

## Example: token store

```python
from aperture.store import FileStore, NoTokenError

store = FileStore("/tmp/lsat-tokens")
try:
    current = store.current_token()
except NoTokenError:
    current = None
```

A pending token is written to `lsat.token.pending`. When the paid token with
the same payment hash is stored, it goes to `lsat.token` and the pending file
is removed. Storing any other token over an existing one raises
`NoReplaceError`; a paid token whose payment hash differs from the pending
one raises `ValueError`.

## What this package does not do

- It contains no mailbox (HashMail) server and no network server of any kind.
- It has no RPC transport: the interceptors work with the callables handed
  to them, and `LightningClient` is an abstract class the caller implements
  against their own node.
- It does not verify invoice signatures or macaroon signatures against a
  root key; a macaroon's signature is only carried and extended.
- There is no command-line program.