"""Storage interface for orchestration job records."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.jobs.models import JobRecord


class JobsRepository(Protocol):
  """Repository contract for durable job records.

  Records live until ``retain_until`` (refreshed on every write); expired
  records read as absent. The tick lease serializes ticks for one job across
  processes.
  """

  async def create_job(self, record: JobRecord, *, now: datetime) -> bool:
    """Insert a new record. Returns False when a live record with the same id exists."""

  async def get_job(self, job_id: str, *, now: datetime) -> JobRecord | None:
    """Fetch a live record by identifier."""

  async def save_job(self, record: JobRecord, *, now: datetime, lease_owner: str | None = None) -> None:
    """Overwrite a record. With ``lease_owner`` the write only lands while that lease is held."""

  async def acquire_lease(self, job_id: str, owner: str, *, now: datetime, lease_seconds: int) -> bool:
    """Claim the tick lease. Returns False when another live lease holds the job."""

  async def release_lease(self, job_id: str, owner: str) -> None:
    """Drop a lease held by ``owner``."""

  async def find_due_ticks(self, *, before: datetime, now: datetime, limit: int) -> list[str]:
    """Return live non-terminal jobs whose next tick was due before ``before``."""

  async def find_unreported(self, *, now: datetime, limit: int) -> list[str]:
    """Return terminal jobs whose outcome has not reached the recorder yet."""

  async def purge_expired(self, *, now: datetime) -> int:
    """Delete records past retention. Returns the number removed."""
