"""Terminal status and summary for a job whose entities have all settled."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from app.jobs.models import JobError, JobRecord, JobResult, compute_progress
from app.utils.clock import format_timestamp

ALL_FAILED_CODE = "ALL_FAILED"
EXPIRED_CODE = "EXPIRED"


def summarize(job: JobRecord) -> JobResult:
  progress = compute_progress(job.entities)
  succeeded, failed, total = progress.done, progress.error, progress.total
  if failed == total:
    message = f"All {total} entities failed"
  else:
    message = f"Successfully processed {succeeded}/{total} entities"
  return JobResult(total=total, succeeded=succeeded, failed=failed, message=message)


def finalize(job: JobRecord, now: datetime) -> JobRecord:
  """Return the terminal form of ``job``.

  ``status`` is ``error`` exactly when every entity failed, otherwise ``done``.
  Running it again on a finalized record yields the same record. An expired
  job keeps its expiry outcome.
  """
  if job.error is not None and job.error.code == EXPIRED_CODE:
    return job
  result = summarize(job)
  all_failed = result.failed == result.total
  return replace(
    job,
    status="error" if all_failed else "done",
    progress=compute_progress(job.entities),
    result=result,
    error=JobError(code=ALL_FAILED_CODE, message="All entities failed") if all_failed else None,
    completed_at=job.completed_at or format_timestamp(now),
    next_tick_at=None,
  )


def expire(job: JobRecord, now: datetime) -> JobRecord:
  """Force-fail a job that passed its deadline, keeping the counts it reached."""
  if job.error is not None and job.error.code == EXPIRED_CODE:
    return job
  return replace(
    job,
    status="error",
    progress=compute_progress(job.entities),
    result=summarize(job),
    error=JobError(code=EXPIRED_CODE, message="Job expired before completion"),
    completed_at=job.completed_at or format_timestamp(now),
    next_tick_at=None,
  )
