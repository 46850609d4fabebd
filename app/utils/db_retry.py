"""Retry wrapper for job-store transactions with retryable vs permanent failure classification."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes that indicate a transient conflict the same transaction can safely replay.
_RETRYABLE_SQLSTATES = {
  "40001": ("serialization_conflict", "Serialization failure - transaction conflict"),
  "40P01": ("deadlock", "Deadlock detected"),
}

# SQLSTATE class prefixes that will fail the same way on every attempt.
_PERMANENT_SQLSTATE_CLASSES = {
  "23": ("integrity_error", "Integrity constraint violation"),
  "42": ("schema_error", "Schema/SQL error (undefined table/column, syntax error)"),
  "28": ("permission_error", "Authentication/permission error"),
}

_CONNECTIVITY_HINTS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy exception."""
  if isinstance(exc, DBAPIError) and getattr(exc, "orig", None) is not None:
    for attribute in ("pgcode", "sqlstate"):
      value = getattr(exc.orig, attribute, None)
      if value:
        return str(value)
  return None


def classify_db_failure(exc: Exception) -> DBFailureClassification:
  """Classify a store failure as retryable or permanent.

  SQLSTATE is the primary signal. Without one, integrity errors and
  programming errors are permanent and operational errors are retryable only
  when the message points at a dropped connection.
  """
  sqlstate = _extract_sqlstate(exc)

  if sqlstate in _RETRYABLE_SQLSTATES:
    category, reason = _RETRYABLE_SQLSTATES[sqlstate]
    return DBFailureClassification(retryable=True, reason=reason, sqlstate=sqlstate, category=category)

  if sqlstate and sqlstate[:2] in _PERMANENT_SQLSTATE_CLASSES:
    category, reason = _PERMANENT_SQLSTATE_CLASSES[sqlstate[:2]]
    return DBFailureClassification(retryable=False, reason=reason, sqlstate=sqlstate, category=category)

  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation (detected by exception type)", sqlstate=sqlstate, category="integrity_error")

  if isinstance(exc, (AttributeError, TypeError, ValueError, KeyError, IndexError)):
    return DBFailureClassification(retryable=False, reason=f"Programming error: {type(exc).__name__}", sqlstate=sqlstate, category="programming_error")

  if isinstance(exc, OperationalError):
    error_msg = str(exc).lower()
    if any(hint in error_msg for hint in _CONNECTIVITY_HINTS):
      return DBFailureClassification(retryable=True, reason="Transient connection/network error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")

  return DBFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")


def _backoff_ms(attempt: int, *, initial_backoff_ms: int, max_backoff_ms: int, jitter: bool) -> float:
  """Exponential backoff for the given 1-based attempt with optional +/-25% jitter."""
  backoff_ms = float(min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms))
  if jitter:
    jitter_range = backoff_ms * 0.25
    backoff_ms += random.uniform(-jitter_range, jitter_range)
  return backoff_ms


async def execute_with_retry(
  *,
  operation_name: str,
  func: Callable[[], Awaitable[T]],
  max_attempts: int = 3,
  initial_backoff_ms: int = 100,
  max_backoff_ms: int = 2000,
  jitter: bool = True,
  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
  """Run an idempotent store operation, replaying it on transient failures.

  Raises the original exception when it is permanent or when the attempt
  budget is exhausted.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      logger.warning(
        "Store operation failed: operation=%s, attempt=%d/%d, category=%s, sqlstate=%s, retryable=%s, reason=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.sqlstate or "none",
        classification.retryable,
        classification.reason,
        exc_info=(not classification.retryable),
      )
      if not classification.retryable or attempt >= max_attempts:
        raise

      backoff_ms = _backoff_ms(attempt, initial_backoff_ms=initial_backoff_ms, max_backoff_ms=max_backoff_ms, jitter=jitter)
      logger.info("Retrying store operation after backoff: operation=%s, attempt=%d/%d, backoff_ms=%.1f", operation_name, attempt, max_attempts, backoff_ms)
      await sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("Store operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
