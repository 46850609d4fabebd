from __future__ import annotations

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from app.core.signature import SignatureVerificationError, SignatureVerifier, SigningKeyProvider, SigningKeyUnavailableError, parse_signature_header

API_BASE = "https://platform.test"
BODY = b'{"job_id":"job-1"}'


class KeyServer:
  """Serves the public half of ``private_key`` and counts fetches."""

  def __init__(self, private_key: Ed25519PrivateKey, *, algorithm: str = "ed25519", status_code: int = 200) -> None:
    self.private_key = private_key
    self.algorithm = algorithm
    self.status_code = status_code
    self.fetches = 0

  def __call__(self, request: httpx.Request) -> httpx.Response:
    self.fetches += 1
    assert str(request.url) == f"{API_BASE}/.well-known/signing-key"
    public_hex = self.private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
    return httpx.Response(self.status_code, json={"algorithm": self.algorithm, "public_key": public_hex, "key_id": "key-1"})


def _sign(private_key: Ed25519PrivateKey, timestamp: int, body: bytes = BODY) -> str:
  signature = private_key.sign(str(timestamp).encode() + b"." + body)
  return f"t={timestamp},v1={signature.hex()}"


@pytest.fixture
def private_key() -> Ed25519PrivateKey:
  return Ed25519PrivateKey.generate()


@pytest.fixture
def key_server(private_key) -> KeyServer:
  return KeyServer(private_key)


@pytest.fixture
def verifier(key_server, clock) -> SignatureVerifier:
  provider = SigningKeyProvider(API_BASE, ttl_seconds=3600, clock=clock, transport=httpx.MockTransport(key_server))
  return SignatureVerifier(provider, max_age_seconds=300, future_tolerance_seconds=60, clock=clock)


def test_parse_signature_header() -> None:
  parsed = parse_signature_header("t=1700000000, v1=abcd")
  assert parsed.timestamp == 1700000000
  assert parsed.signature == "abcd"
  assert parse_signature_header("t=soon,v1=abcd") is None
  assert parse_signature_header("v1=abcd") is None
  assert parse_signature_header("t=1700000000") is None


@pytest.mark.anyio
async def test_valid_signature_passes(verifier, private_key, clock) -> None:
  await verifier.verify(BODY, _sign(private_key, int(clock().timestamp())))


@pytest.mark.anyio
async def test_tampered_body_fails(verifier, private_key, clock) -> None:
  header = _sign(private_key, int(clock().timestamp()))
  with pytest.raises(SignatureVerificationError, match="verification failed"):
    await verifier.verify(BODY + b" ", header)


@pytest.mark.anyio
async def test_signature_from_other_key_fails(verifier, clock) -> None:
  header = _sign(Ed25519PrivateKey.generate(), int(clock().timestamp()))
  with pytest.raises(SignatureVerificationError):
    await verifier.verify(BODY, header)


@pytest.mark.anyio
@pytest.mark.parametrize(("offset", "message"), [(-301, "too old"), (61, "in future")])
async def test_freshness_is_checked_before_key_fetch(verifier, private_key, key_server, clock, offset, message) -> None:
  header = _sign(private_key, int(clock().timestamp()) + offset)
  with pytest.raises(SignatureVerificationError, match=message):
    await verifier.verify(BODY, header)
  assert key_server.fetches == 0


@pytest.mark.anyio
@pytest.mark.parametrize("header", [None, "", "garbage", "t=1,v1=zz"])
async def test_malformed_headers_fail(verifier, clock, header) -> None:
  with pytest.raises(SignatureVerificationError):
    await verifier.verify(BODY, header)


@pytest.mark.anyio
async def test_key_is_cached_until_ttl(verifier, private_key, key_server, clock) -> None:
  await verifier.verify(BODY, _sign(private_key, int(clock().timestamp())))
  clock.advance(3599)
  await verifier.verify(BODY, _sign(private_key, int(clock().timestamp())))
  assert key_server.fetches == 1

  clock.advance(1)
  await verifier.verify(BODY, _sign(private_key, int(clock().timestamp())))
  assert key_server.fetches == 2


@pytest.mark.anyio
@pytest.mark.parametrize("server_kwargs", [{"algorithm": "rsa"}, {"status_code": 500}])
async def test_unusable_key_is_unavailable(private_key, clock, server_kwargs) -> None:
  provider = SigningKeyProvider(API_BASE, ttl_seconds=3600, clock=clock, transport=httpx.MockTransport(KeyServer(private_key, **server_kwargs)))
  verifier = SignatureVerifier(provider, clock=clock)
  with pytest.raises(SigningKeyUnavailableError):
    await verifier.verify(BODY, _sign(private_key, int(clock().timestamp())))
