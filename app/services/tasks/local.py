from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import urlparse

import httpx

from app.config import Settings
from app.services.tasks.interface import TaskEnqueuer

logger = logging.getLogger(__name__)


class LocalHttpEnqueuer(TaskEnqueuer):
  """Deliver ticks by POSTing to this service's own internal endpoints after a delay.

  Each delivery runs in a background asyncio task held in ``pending`` so it is
  not garbage collected mid-flight. Nothing survives a restart; the sweep
  picks up ticks that were scheduled but never delivered.
  """

  def __init__(self, settings: Settings) -> None:
    if not settings.base_url:
      raise RuntimeError("Base URL not configured, strictly required for LocalHttpEnqueuer.")
    if not settings.task_secret:
      raise RuntimeError("Task secret not configured.")
    self.settings = settings
    self.pending: set[asyncio.Task[None]] = set()

  def _should_use_asgi_transport(self, base_url: str) -> bool:
    """Route localhost calls in-process via ASGITransport."""
    hostname = (urlparse(base_url).hostname or "").lower()
    return hostname in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}

  def _build_client(self, base_url: str) -> httpx.AsyncClient:
    # Never trust environment proxy variables for internal task dispatch.
    if self._should_use_asgi_transport(base_url):
      from app.main import app

      return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=base_url, trust_env=False)
    return httpx.AsyncClient(base_url=base_url, trust_env=False)

  async def _deliver(self, path: str, payload: dict[str, Any], delay_seconds: float) -> None:
    if delay_seconds > 0:
      await asyncio.sleep(delay_seconds)
    url = f"{self.settings.base_url.rstrip('/')}{path}"
    headers = {"x-task-secret": self.settings.task_secret}
    try:
      async with self._build_client(self.settings.base_url) as client:
        response = await client.post(url, json=payload, headers=headers, timeout=self.settings.tick_lease_seconds)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
      logger.error("Local task delivery returned %s path=%s payload=%s", exc.response.status_code, path, payload)
    except httpx.RequestError as exc:
      logger.error("Local task delivery failed path=%s payload=%s error=%s", path, payload, exc)

  def _spawn(self, path: str, payload: dict[str, Any], delay_seconds: float) -> None:
    task = asyncio.create_task(self._deliver(path, payload, delay_seconds))
    self.pending.add(task)
    task.add_done_callback(self.pending.discard)

  async def enqueue_tick(self, job_id: str, delay_seconds: float = 0.0) -> None:
    logger.debug("Scheduling local tick job_id=%s delay_s=%.2f", job_id, delay_seconds)
    self._spawn("/internal/tasks/tick", {"job_id": job_id}, delay_seconds)

  async def enqueue_sweep(self) -> None:
    self._spawn("/internal/tasks/sweep", {}, 0.0)

  async def aclose(self) -> None:
    """Cancel deliveries that have not fired yet."""
    for task in list(self.pending):
      task.cancel()
    await asyncio.gather(*self.pending, return_exceptions=True)
    self.pending.clear()
