import asyncio
import json
import logging
from dataclasses import replace
from unittest.mock import Mock

import httpx
import pytest
from app.api.deps import get_controller
from app.config import get_settings
from app.core.lifespan import _start_sweep_timer
from app.main import app
from app.services.tasks.factory import get_task_enqueuer
from app.services.tasks.gcp import CloudTasksEnqueuer
from app.services.tasks.local import LocalHttpEnqueuer
from httpx import ASGITransport, AsyncClient


@pytest.mark.anyio
async def test_local_tick_dispatch():
  """Verify that the local enqueuer posts ticks to the internal endpoint."""
  settings = replace(get_settings(), base_url="http://orchestrator.internal", task_secret="test-task-secret", task_service_provider="local-http")
  seen: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    return httpx.Response(200, json={"outcome": "scheduled", "job_id": "test-job-123"})

  enqueuer = get_task_enqueuer(settings)
  assert isinstance(enqueuer, LocalHttpEnqueuer)
  enqueuer._build_client = lambda base_url: AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)

  await enqueuer.enqueue_tick("test-job-123", 0.0)
  await asyncio.gather(*enqueuer.pending)

  assert len(seen) == 1
  assert str(seen[0].url) == "http://orchestrator.internal/internal/tasks/tick"
  assert seen[0].headers["x-task-secret"] == "test-task-secret"
  assert json.loads(seen[0].content) == {"job_id": "test-job-123"}


@pytest.mark.anyio
async def test_local_delayed_tick_can_be_cancelled():
  settings = replace(get_settings(), base_url="http://localhost:8000", task_secret="test-task-secret")
  enqueuer = LocalHttpEnqueuer(settings)

  await enqueuer.enqueue_tick("job-slow", 60.0)
  assert len(enqueuer.pending) == 1

  await enqueuer.aclose()
  assert enqueuer.pending == set()


def test_local_enqueuer_uses_in_process_transport_for_localhost():
  enqueuer = LocalHttpEnqueuer(replace(get_settings(), base_url="http://localhost:8000", task_secret="s"))
  assert enqueuer._should_use_asgi_transport("http://localhost:8000")
  assert enqueuer._should_use_asgi_transport("http://127.0.0.1:8080")
  assert not enqueuer._should_use_asgi_transport("https://orchestrator.example.com")


@pytest.mark.anyio
async def test_cloud_tasks_tick_carries_secret_and_schedule_time():
  settings = replace(get_settings(), task_service_provider="gcp", cloud_tasks_queue_path="projects/p/locations/l/queues/q", base_url="https://orchestrator.example.com", task_secret="test-task-secret")
  client = Mock()
  client.create_task.return_value = Mock(name="task")

  enqueuer = CloudTasksEnqueuer(settings, client=client)
  await enqueuer.enqueue_tick("job-abc", 2.0)

  request = client.create_task.call_args.kwargs["request"]
  assert request["parent"] == "projects/p/locations/l/queues/q"
  http_request = request["task"]["http_request"]
  assert http_request["url"] == "https://orchestrator.example.com/internal/tasks/tick"
  assert http_request["headers"]["X-Task-Secret"] == "test-task-secret"
  assert json.loads(http_request["body"]) == {"job_id": "job-abc"}
  assert request["task"]["schedule_time"].seconds > 0


@pytest.mark.anyio
async def test_tick_endpoint_requires_secret():
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
    missing = await ac.post("/internal/tasks/tick", json={"job_id": "job-abc"})
    wrong = await ac.post("/internal/tasks/tick", json={"job_id": "job-abc"}, headers={"x-task-secret": "nope"})

  assert missing.status_code == 403
  assert wrong.status_code == 403


@pytest.mark.anyio
async def test_tick_endpoint_advances_job(controller, seed_job, dispatcher):
  """Verify the handler endpoint runs one tick through the controller."""
  await seed_job(entity_ids=("e1",))
  app.dependency_overrides[get_controller] = lambda: controller
  try:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
      response = await ac.post("/internal/tasks/tick", json={"job_id": "job-1"}, headers={"authorization": "Bearer test-task-secret"})
      unknown = await ac.post("/internal/tasks/tick", json={"job_id": "nope"}, headers={"x-task-secret": "test-task-secret"})
      malformed = await ac.post("/internal/tasks/tick", content=b"{}", headers={"x-task-secret": "test-task-secret"})
  finally:
    app.dependency_overrides.clear()

  assert response.status_code == 200
  assert response.json() == {"outcome": "scheduled", "job_id": "job-1", "status": "running"}
  assert dispatcher.calls == ["e1"]
  assert unknown.json() == {"outcome": "missing", "job_id": "nope"}
  assert malformed.status_code == 400


@pytest.mark.anyio
async def test_sweep_endpoint_reports_counts(controller):
  app.dependency_overrides[get_controller] = lambda: controller
  try:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
      response = await ac.post("/internal/tasks/sweep", headers={"x-task-secret": "test-task-secret"})
  finally:
    app.dependency_overrides.clear()

  assert response.status_code == 200
  assert response.json() == {"requeued": [], "unreported": [], "purged": 0}


@pytest.mark.anyio
async def test_sweep_timer_only_runs_for_local_transport():
  logger = logging.getLogger("test")
  settings = get_settings()

  assert _start_sweep_timer(replace(settings, task_service_provider="gcp", sweep_interval_seconds=60), logger) is None
  assert _start_sweep_timer(replace(settings, task_service_provider="local-http", sweep_interval_seconds=0), logger) is None

  task = _start_sweep_timer(replace(settings, task_service_provider="local-http", sweep_interval_seconds=3600), logger)
  assert task is not None
  task.cancel()
  await asyncio.gather(task, return_exceptions=True)
