"""Job-scoped event log that is persisted with the record and shipped by the recorder."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from app.jobs.models import JobRecord, LogEntry, LogLevel
from app.utils.clock import Clock, format_timestamp, utc_now

_STDLIB_LEVELS: dict[str, int] = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR, "success": logging.INFO}


class JobLogger:
  """Collect log entries for one job and mirror them to the module logger."""

  def __init__(self, job_id: str, *, clock: Clock = utc_now, logger: logging.Logger | None = None) -> None:
    self.job_id = job_id
    self._clock = clock
    self._logger = logger or logging.getLogger(__name__)
    self._pending: list[LogEntry] = []

  def _log(self, level: LogLevel, message: str, metadata: dict[str, Any]) -> None:
    entry = LogEntry(ts=format_timestamp(self._clock()), level=level, message=message, metadata=metadata or None)
    self._pending.append(entry)
    self._logger.log(_STDLIB_LEVELS[level], "job_id=%s %s %s", self.job_id, message, metadata or "")

  def debug(self, message: str, **metadata: Any) -> None:
    self._log("debug", message, metadata)

  def info(self, message: str, **metadata: Any) -> None:
    self._log("info", message, metadata)

  def warning(self, message: str, **metadata: Any) -> None:
    self._log("warning", message, metadata)

  def error(self, message: str, **metadata: Any) -> None:
    self._log("error", message, metadata)

  def success(self, message: str, **metadata: Any) -> None:
    self._log("success", message, metadata)

  @property
  def entries(self) -> list[LogEntry]:
    return list(self._pending)

  def flush_into(self, job: JobRecord, max_entries: int) -> JobRecord:
    """Append collected entries to the record, keeping the newest ``max_entries``."""
    if not self._pending:
      return job
    logs = [*job.logs, *self._pending][-max_entries:]
    self._pending.clear()
    return replace(job, logs=logs)
