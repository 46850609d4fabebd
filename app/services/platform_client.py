"""HTTP client construction for calls to the platform API."""

from __future__ import annotations

import httpx

from app.config import Settings


def platform_headers(settings: Settings, *, network: str | None = None) -> dict[str, str]:
  """Bearer auth plus the network selector when one is set."""
  headers = {"accept": "application/json"}
  if settings.api_key:
    headers["authorization"] = f"Bearer {settings.api_key}"
  if network:
    headers["x-network"] = network
  return headers


def build_platform_client(settings: Settings, *, base_url: str = "", network: str | None = None, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
  """Build an httpx client scoped to one platform base URL."""
  return httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=platform_headers(settings, network=network), timeout=settings.http_timeout_seconds, transport=transport, trust_env=False)
