"""Per-entity lifecycle transitions.

Every function here is pure: it takes an ``EntityState`` and returns a new one
(or raises ``InvalidTransitionError``). The lifecycle is::

    pending -> dispatched -> polling -> done
                   |            |
                   +------------+--> pending (retry) | error

``done`` and ``error`` are terminal. ``attempts`` is bumped once per dispatch
attempt and never decreases.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from app.jobs.errors import InvalidTransitionError
from app.jobs.models import TERMINAL_ENTITY_STATUSES, EntityState, JobConfig
from app.utils.clock import format_timestamp, parse_timestamp

POLL_TIMEOUT_REASON = "Poll timeout exceeded"


def is_terminal(entity: EntityState) -> bool:
  return entity.status in TERMINAL_ENTITY_STATUSES


def _require(entity: EntityState, action: str, *allowed: str) -> None:
  if entity.status not in allowed:
    raise InvalidTransitionError(action, entity.status)


def _fail_attempt(entity: EntityState, reason: str, now: datetime, config: JobConfig) -> EntityState:
  # Out of budget: terminal error, keep sub_job_id for diagnostics.
  if entity.attempts >= config.max_retries:
    return replace(entity, status="error", error=reason, poll_deadline=None, completed_at=format_timestamp(now))
  return replace(entity, status="pending", error=reason, sub_job_id=None, poll_deadline=None)


def apply_dispatch_accepted(entity: EntityState, sub_job_id: str, now: datetime) -> EntityState:
  """Record a dispatch the remote worker accepted."""
  _require(entity, "accept a dispatch for", "pending")
  return replace(entity, status="dispatched", sub_job_id=sub_job_id, attempts=entity.attempts + 1, last_attempt_at=format_timestamp(now), poll_deadline=None, error=None)


def apply_dispatch_failed(entity: EntityState, reason: str, now: datetime, config: JobConfig) -> EntityState:
  """Record a dispatch that was rejected or never reached the worker."""
  _require(entity, "fail a dispatch for", "pending")
  attempted = replace(entity, attempts=entity.attempts + 1, last_attempt_at=format_timestamp(now), sub_job_id=None)
  return _fail_attempt(attempted, reason, now, config)


def start_polling(entity: EntityState, now: datetime, config: JobConfig) -> EntityState:
  """Move an accepted entity into polling with a deadline for the current attempt."""
  _require(entity, "start polling", "dispatched")
  started = parse_timestamp(entity.last_attempt_at) if entity.last_attempt_at else now
  deadline = started + timedelta(seconds=config.poll_timeout_seconds)
  return replace(entity, status="polling", poll_deadline=format_timestamp(deadline))


def apply_poll_done(entity: EntityState, result: Any, now: datetime) -> EntityState:
  """Record a successful remote completion."""
  _require(entity, "complete", "polling")
  return replace(entity, status="done", result=result, error=None, poll_deadline=None, completed_at=format_timestamp(now))


def apply_attempt_failed(entity: EntityState, reason: str, now: datetime, config: JobConfig) -> EntityState:
  """Abandon the current attempt after a remote failure or a poll timeout."""
  _require(entity, "fail an attempt for", "dispatched", "polling")
  return _fail_attempt(entity, reason, now, config)


def poll_timed_out(entity: EntityState, now: datetime) -> bool:
  """True when the current attempt has outlived its poll deadline."""
  if entity.poll_deadline is None:
    return False
  return now > parse_timestamp(entity.poll_deadline)
