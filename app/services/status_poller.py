"""Single non-blocking status probe against the sub-agent."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from app.config import Settings
from app.services.platform_client import build_platform_client

logger = logging.getLogger(__name__)

PollState = Literal["still_running", "done", "failed"]


@dataclass(frozen=True)
class PollResult:
  state: PollState
  result: Any = None
  reason: str | None = None


STILL_RUNNING = PollResult(state="still_running")


def _failure_reason(error: Any) -> str:
  if isinstance(error, dict) and error.get("message"):
    return str(error["message"])
  if isinstance(error, str) and error:
    return error
  return "Unknown error"


class StatusPoller:
  """Probe one sub-job. Anything short of a definite answer reads as still running."""

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._settings = settings
    self._transport = transport

  async def check(self, sub_job_id: str) -> PollResult:
    try:
      async with build_platform_client(self._settings, base_url=self._settings.sub_agent_endpoint, transport=self._transport) as client:
        response = await client.get(f"/status/{sub_job_id}")
    except httpx.HTTPError as exc:
      logger.debug("Status probe transport error sub_job_id=%s error=%s", sub_job_id, exc)
      return STILL_RUNNING

    if response.status_code >= 300:
      logger.debug("Status probe returned HTTP %s sub_job_id=%s", response.status_code, sub_job_id)
      return STILL_RUNNING

    try:
      body = response.json()
    except ValueError:
      return STILL_RUNNING
    if not isinstance(body, dict):
      return STILL_RUNNING

    status = body.get("status")
    if status == "done":
      return PollResult(state="done", result=body.get("result"))
    if status == "error":
      return PollResult(state="failed", reason=_failure_reason(body.get("error")))
    return STILL_RUNNING
