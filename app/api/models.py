from __future__ import annotations

from typing import Any

import msgspec

from app.jobs.models import JobError, JobProgress, JobResult, JobStatus


class IntakeLog(msgspec.Struct):
  """Log file entity that receives the final job log."""

  pi: str
  type: str | None = None


class IntakeInput(msgspec.Struct):
  entity_ids: list[str] | None = None
  options: dict[str, Any] | None = None


class IntakeRequest(msgspec.Struct):
  """Body of POST /process."""

  job_id: str
  target: str
  job_collection: str
  api_base: str
  expires_at: str
  network: str | None = None
  log: IntakeLog | None = None
  input: IntakeInput | None = None


class IntakeAccepted(msgspec.Struct):
  job_id: str
  accepted: bool = True


class JobStatusResponse(msgspec.Struct, omit_defaults=True):
  """Body of GET /status/{job_id}; optional fields are omitted when unset."""

  job_id: str
  status: JobStatus
  progress: JobProgress
  started_at: str
  result: JobResult | None = None
  error: JobError | None = None
  completed_at: str | None = None


class HealthResponse(msgspec.Struct):
  status: str
  type: str
  description: str
  agent_id: str
  version: str


class TickRequest(msgspec.Struct):
  job_id: str


class TickResponse(msgspec.Struct, omit_defaults=True):
  outcome: str
  job_id: str
  status: JobStatus | None = None


class SweepResponse(msgspec.Struct):
  requeued: list[str]
  unreported: list[str]
  purged: int
