"""Send one entity to the sub-agent and interpret its answer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import Settings
from app.services.platform_client import build_platform_client

logger = logging.getLogger(__name__)

_MAX_REASON_BODY_CHARS = 300


@dataclass(frozen=True)
class DispatchResult:
  accepted: bool
  sub_job_id: str | None = None
  reason: str | None = None


def _rejection_reason(error: Any) -> str:
  if isinstance(error, dict):
    return str(error.get("message") or error.get("code") or error)
  if error:
    return str(error)
  return "Dispatch rejected"


def build_sub_agent_input(entity_id: str, options: dict[str, Any] | None) -> dict[str, Any]:
  """Input document the sub-agent receives for one entity."""
  return {"entity_id": entity_id, "options": options or {}}


class DispatchClient:
  """Invoke the sub-agent once per call. Failures come back as rejected results, never as exceptions."""

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._settings = settings
    self._transport = transport

  async def dispatch(self, *, api_base: str, network: str | None, target: str, job_collection: str, entity_id: str, options: dict[str, Any] | None) -> DispatchResult:
    path = f"/agents/{self._settings.sub_agent_id}/invoke"
    payload = {"target": target, "job_collection": job_collection, "input": build_sub_agent_input(entity_id, options), "expires_in": self._settings.dispatch_expires_in_seconds, "confirm": True}
    try:
      async with build_platform_client(self._settings, base_url=api_base, network=network, transport=self._transport) as client:
        response = await client.post(path, json=payload)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
      logger.warning("Dispatch transport error entity_id=%s error=%s", entity_id, exc)
      return DispatchResult(accepted=False, reason=f"Transport error: {exc}")

    if response.status_code >= 300:
      return DispatchResult(accepted=False, reason=f"HTTP {response.status_code}: {response.text[:_MAX_REASON_BODY_CHARS]}")

    try:
      body = response.json()
    except ValueError:
      return DispatchResult(accepted=False, reason="Malformed dispatch response: body is not JSON")
    if not isinstance(body, dict):
      return DispatchResult(accepted=False, reason="Malformed dispatch response: expected an object")

    status = body.get("status")
    if status == "started":
      sub_job_id = body.get("job_id")
      if isinstance(sub_job_id, str) and sub_job_id:
        return DispatchResult(accepted=True, sub_job_id=sub_job_id)
      return DispatchResult(accepted=False, reason="Malformed dispatch response: missing job_id")
    if status == "rejected":
      return DispatchResult(accepted=False, reason=_rejection_reason(body.get("error")))
    return DispatchResult(accepted=False, reason=f"Malformed dispatch response: unexpected status {status!r}")
