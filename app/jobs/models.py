"""Domain models for fan-out orchestration jobs."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

import msgspec

from app.config import Settings
from app.jobs.errors import InvalidOptionsError

JobStatus = Literal["pending", "running", "done", "error"]
EntityStatus = Literal["pending", "dispatched", "polling", "done", "error"]
LogLevel = Literal["debug", "info", "warning", "error", "success"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"done", "error"})
TERMINAL_ENTITY_STATUSES: frozenset[str] = frozenset({"done", "error"})
IN_FLIGHT_ENTITY_STATUSES: frozenset[str] = frozenset({"dispatched", "polling"})


@dataclass(frozen=True)
class JobConfig:
  """Execution knobs resolved once at intake."""

  max_retries: int
  concurrency: int
  poll_interval_seconds: float
  poll_timeout_seconds: float


@dataclass(frozen=True)
class EntityState:
  """Lifecycle state of one work item."""

  status: EntityStatus = "pending"
  sub_job_id: str | None = None
  attempts: int = 0
  last_attempt_at: str | None = None
  poll_deadline: str | None = None
  error: str | None = None
  result: Any = None
  completed_at: str | None = None


@dataclass(frozen=True)
class JobProgress:
  total: int
  pending: int
  dispatched: int
  done: int
  error: int


@dataclass(frozen=True)
class JobResult:
  total: int
  succeeded: int
  failed: int
  message: str


@dataclass(frozen=True)
class JobError:
  code: str
  message: str


@dataclass(frozen=True)
class LogEntry:
  ts: str
  level: LogLevel
  message: str
  metadata: dict[str, Any] | None = None


@dataclass
class JobRecord:
  """Durable state of one orchestration job."""

  job_id: str
  status: JobStatus
  target: str
  job_collection: str
  api_base: str
  expires_at: str
  config: JobConfig
  entities: dict[str, EntityState]
  progress: JobProgress
  started_at: str
  network: str | None = None
  log_target: str | None = None
  options: dict[str, Any] = field(default_factory=dict)
  completed_at: str | None = None
  result: JobResult | None = None
  error: JobError | None = None
  logs: list[LogEntry] = field(default_factory=list)
  next_tick_at: str | None = None
  reported_at: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_JOB_STATUSES


def compute_progress(entities: Mapping[str, EntityState]) -> JobProgress:
  """Derive aggregate counts from per-entity state."""
  counts = {"pending": 0, "dispatched": 0, "done": 0, "error": 0}
  for entity in entities.values():
    # Dispatched and polling both count as in flight.
    bucket = "dispatched" if entity.status in IN_FLIGHT_ENTITY_STATUSES else entity.status
    counts[bucket] += 1
  return JobProgress(total=len(entities), **counts)


def _option_int(options: Mapping[str, Any], key: str, default: int) -> int:
  value = options.get(key)
  if value is None:
    return default
  # bool is an int subclass and never a meaningful count.
  if isinstance(value, bool) or not isinstance(value, int):
    raise InvalidOptionsError(f"options.{key} must be a positive integer.")
  if value <= 0:
    raise InvalidOptionsError(f"options.{key} must be a positive integer.")
  return value


def resolve_config(options: Mapping[str, Any] | None, settings: Settings) -> JobConfig:
  """Merge caller overrides with service defaults.

  Only ``max_retries`` and ``concurrency`` are caller-tunable. Concurrency is
  clamped to the service-wide ceiling. Polling cadence always comes from
  settings.
  """
  options = options or {}
  max_retries = _option_int(options, "max_retries", settings.default_max_retries)
  concurrency = min(_option_int(options, "concurrency", settings.default_concurrency), settings.max_concurrency)
  return JobConfig(max_retries=max_retries, concurrency=concurrency, poll_interval_seconds=settings.poll_interval_seconds, poll_timeout_seconds=settings.poll_timeout_seconds)


def initial_entities(entity_ids: Iterable[str]) -> dict[str, EntityState]:
  """Build the entity map in first-seen order, collapsing duplicates."""
  entities: dict[str, EntityState] = {}
  for entity_id in entity_ids:
    if entity_id not in entities:
      entities[entity_id] = EntityState()
  return entities


def new_job_record(
  *,
  job_id: str,
  target: str,
  job_collection: str,
  api_base: str,
  expires_at: str,
  entity_ids: Iterable[str],
  config: JobConfig,
  started_at: str,
  network: str | None = None,
  log_target: str | None = None,
  options: Mapping[str, Any] | None = None,
) -> JobRecord:
  """Create the initial pending record for an accepted intake."""
  entities = initial_entities(entity_ids)
  return JobRecord(
    job_id=job_id,
    status="pending",
    target=target,
    job_collection=job_collection,
    api_base=api_base,
    expires_at=expires_at,
    config=config,
    entities=entities,
    progress=compute_progress(entities),
    started_at=started_at,
    network=network,
    log_target=log_target or job_collection,
    options=dict(options or {}),
  )


def job_to_builtins(job: JobRecord) -> dict[str, Any]:
  """Convert a record into JSON-compatible builtins for storage."""
  return msgspec.to_builtins(job)


def job_from_builtins(data: Mapping[str, Any]) -> JobRecord:
  """Rebuild a record from stored builtins."""
  return msgspec.convert(data, type=JobRecord)
