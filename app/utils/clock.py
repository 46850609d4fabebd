"""UTC timestamp helpers shared by the job model, store and signature checks."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
  """Return the current time as an aware UTC datetime."""
  return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
  """Render an aware datetime as ISO-8601 UTC with millisecond precision."""
  return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(raw: str) -> datetime:
  """Parse an ISO-8601 timestamp; naive values are treated as UTC."""
  parsed = datetime.fromisoformat(raw.strip())
  if parsed.tzinfo is None:
    return parsed.replace(tzinfo=UTC)
  return parsed.astimezone(UTC)
