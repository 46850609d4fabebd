"""Paginated listing of the entities owned by a target collection."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx

from app.config import Settings
from app.jobs.errors import DiscoveryError
from app.services.platform_client import build_platform_client

logger = logging.getLogger(__name__)


class EntityDiscovery:
  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._settings = settings
    self._transport = transport

  async def iter_pages(self, *, api_base: str, network: str | None, target: str, entity_type: str | None = None) -> AsyncIterator[list[str]]:
    """Yield entity ids page by page until the listing reports no more pages."""
    limit = self._settings.discovery_page_size
    offset = 0
    try:
      client = build_platform_client(self._settings, base_url=api_base, network=network, transport=self._transport)
    except httpx.InvalidURL as exc:
      raise DiscoveryError(f"Discovery failed: invalid api_base: {exc}") from exc
    async with client:
      while True:
        params: dict[str, str | int] = {"limit": limit, "offset": offset}
        if entity_type:
          params["type"] = entity_type
        try:
          response = await client.get(f"/collections/{target}/entities", params=params)
        except httpx.HTTPError as exc:
          raise DiscoveryError(f"Discovery failed: {exc}") from exc
        if response.status_code >= 300:
          raise DiscoveryError(f"Discovery failed: HTTP {response.status_code}")

        try:
          body = response.json()
          entities = body["entities"]
          has_more = bool(body.get("pagination", {}).get("has_more", False))
          page = [str(entity["pi"]) for entity in entities]
        except (ValueError, KeyError, TypeError) as exc:
          raise DiscoveryError("Discovery failed: malformed listing response") from exc

        yield page
        if not has_more:
          return
        offset += limit

  async def discover(self, *, api_base: str, network: str | None, target: str, entity_type: str | None = None) -> list[str]:
    """Collect every entity id of ``target`` in listing order."""
    entity_ids: list[str] = []
    async for page in self.iter_pages(api_base=api_base, network=network, target=target, entity_type=entity_type):
      entity_ids.extend(page)
    logger.info("Discovery complete target=%s entity_count=%d", target, len(entity_ids))
    return entity_ids
