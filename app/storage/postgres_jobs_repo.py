"""Postgres-backed repository for orchestration jobs using SQLAlchemy."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_session_factory
from app.jobs.errors import LeaseLostError
from app.jobs.models import JobRecord, job_from_builtins, job_to_builtins
from app.schema.jobs import OrchestratorJob
from app.storage.jobs_repo import JobsRepository
from app.utils.clock import parse_timestamp
from app.utils.db_retry import execute_with_retry

_LIVE_STATUSES = ("pending", "running")
_TERMINAL_STATUSES = ("done", "error")


def _row_values(record: JobRecord, *, retain_until: datetime) -> dict:
  return {
    "status": record.status,
    "record_json": job_to_builtins(record),
    "next_tick_at": parse_timestamp(record.next_tick_at) if record.next_tick_at else None,
    "reported": record.reported_at is not None,
    "retain_until": retain_until,
  }


class PostgresJobsRepository(JobsRepository):
  """Persist job records to the ``orchestrator_jobs`` table."""

  def __init__(self, *, record_ttl_seconds: int, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._ttl = timedelta(seconds=record_ttl_seconds)
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord, *, now: datetime) -> bool:
    values = _row_values(record, retain_until=now + self._ttl)
    stmt = insert(OrchestratorJob).values(job_id=record.job_id, **values)
    # A row past retention is dead and may be replaced; a live row wins.
    stmt = stmt.on_conflict_do_update(index_elements=[OrchestratorJob.job_id], set_={**values, "lease_owner": None, "lease_expires_at": None, "created_at": now, "updated_at": now}, where=OrchestratorJob.retain_until < now)

    async def _create() -> int:
      async with self._session_factory() as session:
        result = await session.execute(stmt)
        await session.commit()
        return result.rowcount

    return await execute_with_retry(operation_name="create_job", func=_create) == 1

  async def get_job(self, job_id: str, *, now: datetime) -> JobRecord | None:
    async def _get() -> dict | None:
      async with self._session_factory() as session:
        stmt = select(OrchestratorJob.record_json).where(OrchestratorJob.job_id == job_id, OrchestratorJob.retain_until >= now)
        return (await session.execute(stmt)).scalar_one_or_none()

    data = await execute_with_retry(operation_name="get_job", func=_get)
    if data is None:
      return None
    return job_from_builtins(data)

  async def save_job(self, record: JobRecord, *, now: datetime, lease_owner: str | None = None) -> None:
    stmt = update(OrchestratorJob).where(OrchestratorJob.job_id == record.job_id).values(**_row_values(record, retain_until=now + self._ttl), updated_at=now)
    if lease_owner is not None:
      stmt = stmt.where(OrchestratorJob.lease_owner == lease_owner)

    async def _save() -> int:
      async with self._session_factory() as session:
        result = await session.execute(stmt)
        await session.commit()
        return result.rowcount

    if await execute_with_retry(operation_name="save_job", func=_save) == 0:
      raise LeaseLostError(f"Job {record.job_id} could not be saved; lease is no longer held by {lease_owner}.")

  async def acquire_lease(self, job_id: str, owner: str, *, now: datetime, lease_seconds: int) -> bool:
    stmt = (
      update(OrchestratorJob)
      .where(OrchestratorJob.job_id == job_id, OrchestratorJob.retain_until >= now)
      .where(or_(OrchestratorJob.lease_owner.is_(None), OrchestratorJob.lease_expires_at < now, OrchestratorJob.lease_owner == owner))
      .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=lease_seconds))
    )

    async def _acquire() -> int:
      async with self._session_factory() as session:
        result = await session.execute(stmt)
        await session.commit()
        return result.rowcount

    return await execute_with_retry(operation_name="acquire_lease", func=_acquire) == 1

  async def release_lease(self, job_id: str, owner: str) -> None:
    stmt = update(OrchestratorJob).where(OrchestratorJob.job_id == job_id, OrchestratorJob.lease_owner == owner).values(lease_owner=None, lease_expires_at=None)

    async def _release() -> None:
      async with self._session_factory() as session:
        await session.execute(stmt)
        await session.commit()

    await execute_with_retry(operation_name="release_lease", func=_release)

  async def find_due_ticks(self, *, before: datetime, now: datetime, limit: int) -> list[str]:
    stmt = (
      select(OrchestratorJob.job_id)
      .where(OrchestratorJob.status.in_(_LIVE_STATUSES), OrchestratorJob.next_tick_at < before, OrchestratorJob.retain_until >= now)
      .order_by(OrchestratorJob.next_tick_at.asc())
      .limit(limit)
    )
    return await self._list_ids("find_due_ticks", stmt)

  async def find_unreported(self, *, now: datetime, limit: int) -> list[str]:
    stmt = (
      select(OrchestratorJob.job_id)
      .where(OrchestratorJob.status.in_(_TERMINAL_STATUSES), OrchestratorJob.reported.is_(False), OrchestratorJob.retain_until >= now)
      .order_by(OrchestratorJob.updated_at.asc())
      .limit(limit)
    )
    return await self._list_ids("find_unreported", stmt)

  async def purge_expired(self, *, now: datetime) -> int:
    stmt = delete(OrchestratorJob).where(OrchestratorJob.retain_until < now)

    async def _purge() -> int:
      async with self._session_factory() as session:
        result = await session.execute(stmt)
        await session.commit()
        return result.rowcount

    return await execute_with_retry(operation_name="purge_expired", func=_purge)

  async def _list_ids(self, operation_name: str, stmt) -> list[str]:  # type: ignore[no-untyped-def]
    async def _list() -> list[str]:
      async with self._session_factory() as session:
        return list((await session.execute(stmt)).scalars().all())

    return await execute_with_retry(operation_name=operation_name, func=_list)
