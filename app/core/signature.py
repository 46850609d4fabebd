"""Ed25519 verification of platform-signed intake requests.

The header carries ``t=<unix-ts>,v1=<hex-signature>`` and the signature covers
``"<t>.<raw-body>"``. The public key is published at
``{api_base}/.well-known/signing-key`` and cached by ``SigningKeyProvider``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from app.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class SignatureVerificationError(Exception):
  """The request signature is missing, malformed, stale or does not verify."""


class SigningKeyUnavailableError(Exception):
  """The signing key could not be fetched or decoded."""


@dataclass(frozen=True)
class ParsedSignature:
  timestamp: int
  signature: str


@dataclass(frozen=True)
class _CachedKey:
  key: Ed25519PublicKey
  key_id: str | None
  fetched_at: datetime


def parse_signature_header(header: str) -> ParsedSignature | None:
  """Parse ``t=...,v1=...``; returns None when either part is missing or malformed."""
  timestamp: int | None = None
  signature: str | None = None
  for part in header.split(","):
    key, sep, value = part.strip().partition("=")
    if not sep:
      continue
    if key == "t":
      try:
        timestamp = int(value)
      except ValueError:
        return None
    elif key == "v1":
      signature = value
  if timestamp is None or not signature:
    return None
  return ParsedSignature(timestamp=timestamp, signature=signature)


class SigningKeyProvider:
  """Fetch and cache the platform's public signing key."""

  def __init__(self, api_base: str, *, ttl_seconds: int, clock: Clock = utc_now, transport: httpx.AsyncBaseTransport | None = None, timeout_seconds: float = 10.0) -> None:
    self._url = f"{api_base.rstrip('/')}/.well-known/signing-key"
    self._ttl_seconds = ttl_seconds
    self._clock = clock
    self._transport = transport
    self._timeout_seconds = timeout_seconds
    self._cached: _CachedKey | None = None
    self._lock = asyncio.Lock()

  def _fresh(self) -> _CachedKey | None:
    if self._cached is None:
      return None
    if (self._clock() - self._cached.fetched_at).total_seconds() >= self._ttl_seconds:
      return None
    return self._cached

  async def get_key(self) -> Ed25519PublicKey:
    cached = self._fresh()
    if cached is not None:
      return cached.key
    async with self._lock:
      # Another waiter may have refreshed while this one queued.
      cached = self._fresh()
      if cached is None:
        cached = await self._fetch()
        self._cached = cached
      return cached.key

  async def _fetch(self) -> _CachedKey:
    try:
      async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport, trust_env=False) as client:
        response = await client.get(self._url)
    except httpx.HTTPError as exc:
      raise SigningKeyUnavailableError(f"Failed to fetch signing key: {exc}") from exc
    if response.status_code >= 300:
      raise SigningKeyUnavailableError(f"Failed to fetch signing key: HTTP {response.status_code}")

    try:
      data = response.json()
      algorithm = data.get("algorithm")
      public_key = data["public_key"]
    except (ValueError, KeyError, AttributeError) as exc:
      raise SigningKeyUnavailableError("Signing key response is malformed") from exc
    if algorithm != "ed25519":
      raise SigningKeyUnavailableError(f"Unsupported signing algorithm: {algorithm}")
    try:
      key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key))
    except (ValueError, TypeError) as exc:
      raise SigningKeyUnavailableError("Signing key is not a valid ed25519 public key") from exc

    logger.info("Fetched signing key key_id=%s", data.get("key_id"))
    return _CachedKey(key=key, key_id=data.get("key_id"), fetched_at=self._clock())


class SignatureVerifier:
  def __init__(self, key_provider: SigningKeyProvider, *, max_age_seconds: int = 300, future_tolerance_seconds: int = 60, clock: Clock = utc_now) -> None:
    self._key_provider = key_provider
    self._max_age_seconds = max_age_seconds
    self._future_tolerance_seconds = future_tolerance_seconds
    self._clock = clock

  async def verify(self, body: bytes, header: str | None) -> None:
    """Raise ``SignatureVerificationError`` unless ``header`` signs ``body``.

    Freshness is checked before the key is consulted, so stale or
    future-dated requests never trigger a key fetch.
    """
    if not header:
      raise SignatureVerificationError("Missing signature header")
    parsed = parse_signature_header(header)
    if parsed is None:
      raise SignatureVerificationError("Invalid signature header format")

    now = int(self._clock().timestamp())
    if parsed.timestamp < now - self._max_age_seconds:
      raise SignatureVerificationError("Signature timestamp too old")
    if parsed.timestamp > now + self._future_tolerance_seconds:
      raise SignatureVerificationError("Signature timestamp in future")

    try:
      signature = bytes.fromhex(parsed.signature)
    except ValueError as exc:
      raise SignatureVerificationError("Signature is not valid hex") from exc

    key = await self._key_provider.get_key()
    message = str(parsed.timestamp).encode() + b"." + body
    try:
      key.verify(signature, message)
    except InvalidSignature as exc:
      raise SignatureVerificationError("Signature verification failed") from exc
