from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from google.cloud import tasks_v2
from google.protobuf import timestamp_pb2
from starlette.concurrency import run_in_threadpool

from app.config import Settings
from app.services.tasks.interface import TaskEnqueuer
from app.utils.clock import utc_now

logger = logging.getLogger(__name__)


class CloudTasksEnqueuer(TaskEnqueuer):
  """Enqueue ticks as Google Cloud Tasks HTTP tasks with a schedule time."""

  def __init__(self, settings: Settings, client: tasks_v2.CloudTasksClient | None = None) -> None:
    if not settings.cloud_tasks_queue_path:
      raise RuntimeError("Cloud Tasks queue path not configured.")
    if not settings.base_url:
      raise RuntimeError("Base URL not configured.")
    self.settings = settings
    self.client = client or tasks_v2.CloudTasksClient()

  def _build_task(self, path: str, payload: dict[str, Any], delay_seconds: float) -> dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    # Cloud Run invoker auth may occupy Authorization, so the shared secret travels in its own header.
    if self.settings.task_secret:
      headers["X-Task-Secret"] = self.settings.task_secret
    task: dict[str, Any] = {"http_request": {"http_method": tasks_v2.HttpMethod.POST, "url": f"{self.settings.base_url.rstrip('/')}{path}", "headers": headers, "body": json.dumps(payload).encode()}}
    if delay_seconds > 0:
      schedule_time = timestamp_pb2.Timestamp()
      schedule_time.FromDatetime(utc_now() + timedelta(seconds=delay_seconds))
      task["schedule_time"] = schedule_time
    return task

  async def _create(self, path: str, payload: dict[str, Any], delay_seconds: float) -> None:
    task = self._build_task(path, payload, delay_seconds)
    # create_task is a blocking gRPC call.
    response = await run_in_threadpool(self.client.create_task, request={"parent": self.settings.cloud_tasks_queue_path, "task": task})
    logger.info("Enqueued task %s path=%s payload=%s", response.name, path, payload)

  async def enqueue_tick(self, job_id: str, delay_seconds: float = 0.0) -> None:
    await self._create("/internal/tasks/tick", {"job_id": job_id}, delay_seconds)

  async def enqueue_sweep(self) -> None:
    await self._create("/internal/tasks/sweep", {}, 0.0)
