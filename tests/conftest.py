"""Shared fixtures and in-memory doubles for orchestrator tests."""

from __future__ import annotations

import os

# Settings are read once per process; pin them before anything imports the app.
os.environ.setdefault("ORCH_ENV", "test")
os.environ.setdefault("ORCH_API_BASE", "https://platform.test")
os.environ.setdefault("ORCH_API_KEY", "test-api-key")
os.environ.setdefault("ORCH_SUB_AGENT_ID", "sub-agent-1")
os.environ.setdefault("ORCH_SUB_AGENT_ENDPOINT", "https://sub-agent.test")
os.environ.setdefault("ORCH_BASE_URL", "http://localhost:8000")
os.environ.setdefault("ORCH_TASK_SECRET", "test-task-secret")
os.environ.setdefault("ORCH_VERIFY_SIGNATURES", "false")

from collections import defaultdict  # noqa: E402
from dataclasses import replace  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402

from app.config import Settings, get_settings  # noqa: E402
from app.jobs.controller import OrchestratorController  # noqa: E402
from app.jobs.errors import LeaseLostError  # noqa: E402
from app.jobs.models import JobRecord, job_from_builtins, job_to_builtins, new_job_record, resolve_config  # noqa: E402
from app.services.dispatch_client import DispatchResult  # noqa: E402
from app.services.recorder import RecordOutcome, WriteOutcome  # noqa: E402
from app.services.status_poller import PollResult  # noqa: E402
from app.utils.clock import format_timestamp  # noqa: E402


@pytest.fixture
def anyio_backend():
  return "asyncio"


class ManualClock:
  """Deterministic clock the tests advance by hand."""

  def __init__(self, start: datetime | None = None) -> None:
    self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

  def __call__(self) -> datetime:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now = self.now + timedelta(seconds=seconds)


class InMemoryJobsRepo:
  """Jobs repository double that stores records as JSON builtins, like the real table."""

  def __init__(self, *, record_ttl_seconds: int = 86400) -> None:
    self._ttl = timedelta(seconds=record_ttl_seconds)
    self.rows: dict[str, dict] = {}
    self.saves = 0

  def _live(self, job_id: str, now: datetime) -> dict | None:
    row = self.rows.get(job_id)
    if row is None or row["retain_until"] < now:
      return None
    return row

  async def create_job(self, record: JobRecord, *, now: datetime) -> bool:
    if self._live(record.job_id, now) is not None:
      return False
    self.rows[record.job_id] = {"record": job_to_builtins(record), "retain_until": now + self._ttl, "lease_owner": None, "lease_expires_at": None}
    return True

  async def get_job(self, job_id: str, *, now: datetime) -> JobRecord | None:
    row = self._live(job_id, now)
    if row is None:
      return None
    return job_from_builtins(row["record"])

  async def save_job(self, record: JobRecord, *, now: datetime, lease_owner: str | None = None) -> None:
    row = self.rows.get(record.job_id)
    if row is None or (lease_owner is not None and row["lease_owner"] != lease_owner):
      raise LeaseLostError(record.job_id)
    row["record"] = job_to_builtins(record)
    row["retain_until"] = now + self._ttl
    self.saves += 1

  async def acquire_lease(self, job_id: str, owner: str, *, now: datetime, lease_seconds: int) -> bool:
    row = self._live(job_id, now)
    if row is None:
      return False
    holder, expires = row["lease_owner"], row["lease_expires_at"]
    if holder is not None and holder != owner and expires is not None and expires >= now:
      return False
    row["lease_owner"] = owner
    row["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
    return True

  async def release_lease(self, job_id: str, owner: str) -> None:
    row = self.rows.get(job_id)
    if row is not None and row["lease_owner"] == owner:
      row["lease_owner"] = None
      row["lease_expires_at"] = None

  async def find_due_ticks(self, *, before: datetime, now: datetime, limit: int) -> list[str]:
    due: list[str] = []
    for job_id, row in self.rows.items():
      record = row["record"]
      if row["retain_until"] < now or record["status"] not in ("pending", "running") or not record.get("next_tick_at"):
        continue
      if datetime.fromisoformat(record["next_tick_at"]) < before:
        due.append(job_id)
    return due[:limit]

  async def find_unreported(self, *, now: datetime, limit: int) -> list[str]:
    return [job_id for job_id, row in self.rows.items() if row["retain_until"] >= now and row["record"]["status"] in ("done", "error") and row["record"].get("reported_at") is None][:limit]

  async def purge_expired(self, *, now: datetime) -> int:
    expired = [job_id for job_id, row in self.rows.items() if row["retain_until"] < now]
    for job_id in expired:
      del self.rows[job_id]
    return len(expired)


class FakeDispatcher:
  """Dispatch double scripted per entity; unscripted dispatches are accepted."""

  def __init__(self) -> None:
    self.scripts: dict[str, list[DispatchResult]] = defaultdict(list)
    self.calls: list[str] = []

  def script(self, entity_id: str, *results: DispatchResult) -> None:
    self.scripts[entity_id].extend(results)

  async def dispatch(self, *, api_base: str, network: str | None, target: str, job_collection: str, entity_id: str, options: dict | None) -> DispatchResult:
    self.calls.append(entity_id)
    if self.scripts[entity_id]:
      return self.scripts[entity_id].pop(0)
    attempt = self.calls.count(entity_id)
    return DispatchResult(accepted=True, sub_job_id=f"sub-{entity_id}-{attempt}")


class FakePoller:
  """Poll double; ``default`` answers any sub-job without a script."""

  def __init__(self, default: PollResult | None = None) -> None:
    self.default = default or PollResult(state="done", result={"ok": True})
    self.scripts: dict[str, list[PollResult]] = defaultdict(list)
    self.calls: list[str] = []

  async def check(self, sub_job_id: str) -> PollResult:
    self.calls.append(sub_job_id)
    if self.scripts[sub_job_id]:
      return self.scripts[sub_job_id].pop(0)
    return self.default


class FakeRecorder:
  def __init__(self) -> None:
    self.recorded: list[JobRecord] = []

  async def record(self, job: JobRecord, agent_id: str, agent_version: str) -> RecordOutcome:
    self.recorded.append(job)
    return RecordOutcome(log=WriteOutcome(ok=True, attempts=1), status=WriteOutcome(ok=True, attempts=1))


class FakeEnqueuer:
  def __init__(self) -> None:
    self.ticks: list[tuple[str, float]] = []
    self.sweeps = 0
    self.fail = False

  async def enqueue_tick(self, job_id: str, delay_seconds: float = 0.0) -> None:
    if self.fail:
      raise RuntimeError("queue unavailable")
    self.ticks.append((job_id, delay_seconds))

  async def enqueue_sweep(self) -> None:
    self.sweeps += 1


@pytest.fixture
def settings() -> Settings:
  return replace(get_settings(), default_max_retries=3, default_concurrency=5, max_concurrency=100, poll_interval_seconds=2.0, poll_timeout_seconds=300.0, max_log_entries=500)


@pytest.fixture
def clock() -> ManualClock:
  return ManualClock()


@pytest.fixture
def repo() -> InMemoryJobsRepo:
  return InMemoryJobsRepo()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
  return FakeDispatcher()


@pytest.fixture
def poller() -> FakePoller:
  return FakePoller()


@pytest.fixture
def recorder() -> FakeRecorder:
  return FakeRecorder()


@pytest.fixture
def enqueuer() -> FakeEnqueuer:
  return FakeEnqueuer()


@pytest.fixture
def controller(settings, repo, dispatcher, poller, recorder, enqueuer, clock) -> OrchestratorController:
  return OrchestratorController(settings=settings, repo=repo, dispatcher=dispatcher, poller=poller, recorder=recorder, enqueuer=enqueuer, clock=clock, lease_owner="test-worker")


@pytest.fixture
def seed_job(settings, repo, clock):
  """Create a stored job with the given entities and option overrides."""

  async def _seed(job_id: str = "job-1", entity_ids: tuple[str, ...] = ("e1",), *, expires_in_seconds: float = 3600, **options: int) -> JobRecord:
    record = new_job_record(
      job_id=job_id,
      target="collection-1",
      job_collection="job-collection-1",
      api_base="https://platform.test",
      expires_at=format_timestamp(clock() + timedelta(seconds=expires_in_seconds)),
      entity_ids=entity_ids,
      config=resolve_config(options, settings),
      started_at=format_timestamp(clock()),
      options=options,
    )
    record.next_tick_at = record.started_at
    await repo.create_job(record, now=clock())
    return record

  return _seed
