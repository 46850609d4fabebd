"""Best-effort reporting of finished jobs to the platform.

Two conditional writes happen per job: the structured log lands on the log
file entity, then the job collection's status property is updated. Both use
the platform's compare-and-swap discipline (read ``cid``, write with
``expect_tip``). Conflicts and transport errors are retried with exponential
backoff plus jitter; anything else is logged and reported, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import msgspec

from app.config import Settings
from app.jobs.models import JobRecord
from app.services.platform_client import build_platform_client
from app.utils.clock import Clock, format_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteOutcome:
  ok: bool
  attempts: int
  error: str | None = None


@dataclass(frozen=True)
class RecordOutcome:
  log: WriteOutcome
  status: WriteOutcome

  @property
  def ok(self) -> bool:
    return self.log.ok and self.status.ok


class _RetryableWriteError(Exception):
  pass


class _PermanentWriteError(Exception):
  pass


def build_log_data(job: JobRecord, agent_id: str, agent_version: str) -> dict[str, Any]:
  """Structured summary shipped to the log file entity."""
  entity_results: dict[str, dict[str, Any]] = {}
  for entity_id, entity in job.entities.items():
    outcome: dict[str, Any] = {"status": "done" if entity.status == "done" else "error"}
    if entity.sub_job_id is not None:
      outcome["sub_job_id"] = entity.sub_job_id
    if entity.result is not None:
      outcome["result"] = entity.result
    if entity.error is not None:
      outcome["error"] = entity.error
    entity_results[entity_id] = outcome

  return {
    "job_id": job.job_id,
    "agent_id": agent_id,
    "agent_version": agent_version,
    "started_at": job.started_at,
    "completed_at": job.completed_at,
    "status": "done" if job.status == "done" else "error",
    "result": msgspec.to_builtins(job.result),
    "error": msgspec.to_builtins(job.error),
    "entity_results": entity_results,
    "entries": msgspec.to_builtins(job.logs),
  }


class ExternalRecorder:
  def __init__(
    self,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Clock = utc_now,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ) -> None:
    self._settings = settings
    self._transport = transport
    self._clock = clock
    self._sleep = sleep

  def backoff_seconds(self, attempt: int) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    delay_ms = (2**attempt) * self._settings.recorder_base_delay_ms + random.uniform(0, self._settings.recorder_jitter_ms)
    return delay_ms / 1000.0

  async def record(self, job: JobRecord, agent_id: str, agent_version: str) -> RecordOutcome:
    """Write the job log, then the job collection status. Never raises for remote failures."""
    final_status = "done" if job.status == "done" else "error"
    log_target = job.log_target or job.job_collection
    log_data = build_log_data(job, agent_id, agent_version)

    try:
      client = build_platform_client(self._settings, base_url=job.api_base, network=job.network, transport=self._transport)
    except httpx.InvalidURL as exc:
      logger.error("Cannot record job outcome job_id=%s error=%s", job.job_id, exc)
      failed = WriteOutcome(ok=False, attempts=0, error=f"Invalid api_base: {exc}")
      return RecordOutcome(log=failed, status=failed)

    async with client:
      log_outcome = await self._conditional_update(
        client,
        f"/files/{log_target}",
        lambda cid: {"expect_tip": cid, "extra_properties": {"log_data": log_data, "log_written_at": format_timestamp(self._clock())}, "note": f"Log written by {agent_id}"},
        job_id=job.job_id,
      )
      status_outcome = await self._conditional_update(
        client,
        f"/collections/{job.job_collection}",
        lambda cid: {"expect_tip": cid, "properties": {"status": final_status}, "note": f"Job {job.job_id} completed with status: {final_status}"},
        job_id=job.job_id,
      )

    if log_outcome.ok and status_outcome.ok:
      logger.info("Recorded job outcome job_id=%s status=%s", job.job_id, final_status)
    return RecordOutcome(log=log_outcome, status=status_outcome)

  async def _conditional_update(self, client: httpx.AsyncClient, path: str, build_body: Callable[[str], dict[str, Any]], *, job_id: str) -> WriteOutcome:
    max_attempts = self._settings.recorder_max_attempts
    last_error = "no attempt made"
    for attempt in range(max_attempts):
      try:
        await self._try_update(client, path, build_body)
        return WriteOutcome(ok=True, attempts=attempt + 1)
      except _PermanentWriteError as exc:
        logger.error("Conditional write failed job_id=%s path=%s error=%s", job_id, path, exc)
        return WriteOutcome(ok=False, attempts=attempt + 1, error=str(exc))
      except _RetryableWriteError as exc:
        last_error = str(exc)

      if attempt < max_attempts - 1:
        delay = self.backoff_seconds(attempt)
        logger.info("Retrying conditional write job_id=%s path=%s attempt=%d/%d delay_s=%.3f error=%s", job_id, path, attempt + 1, max_attempts, delay, last_error)
        await self._sleep(delay)

    logger.error("Conditional write gave up job_id=%s path=%s attempts=%d error=%s", job_id, path, max_attempts, last_error)
    return WriteOutcome(ok=False, attempts=max_attempts, error=last_error)

  async def _try_update(self, client: httpx.AsyncClient, path: str, build_body: Callable[[str], dict[str, Any]]) -> None:
    try:
      current = await client.get(path)
    except httpx.HTTPError as exc:
      raise _RetryableWriteError(f"Transport error reading {path}: {exc}") from exc
    if current.status_code >= 300:
      raise _PermanentWriteError(f"Reading {path} returned HTTP {current.status_code}")
    try:
      cid = current.json()["cid"]
    except (ValueError, KeyError, TypeError) as exc:
      raise _PermanentWriteError(f"Reading {path} returned no version token") from exc

    try:
      response = await client.put(path, json=build_body(cid))
    except httpx.HTTPError as exc:
      raise _RetryableWriteError(f"Transport error writing {path}: {exc}") from exc
    if response.status_code == 409:
      raise _RetryableWriteError(f"Version conflict writing {path}")
    if response.status_code >= 300:
      raise _PermanentWriteError(f"Writing {path} returned HTTP {response.status_code}")
