"""Tick-driven driver that advances one orchestration job per invocation.

A tick never holds state across invocations: it loads the record, advances
entities through one round of dispatch and polling, persists, and either
schedules the next tick or finalizes and reports. A crash at any point is
recovered by re-running the tick from the last persisted record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Literal, TypeVar

from app.config import Settings
from app.jobs import state_machine
from app.jobs.errors import LeaseLostError
from app.jobs.finalizer import expire, finalize
from app.jobs.job_logger import JobLogger
from app.jobs.models import EntityState, JobRecord, JobStatus, compute_progress
from app.jobs.scheduler import plan_tick
from app.services.dispatch_client import DispatchClient, DispatchResult
from app.services.recorder import ExternalRecorder
from app.services.status_poller import STILL_RUNNING, PollResult, StatusPoller
from app.services.tasks.interface import TaskEnqueuer
from app.storage.jobs_repo import JobsRepository
from app.utils.clock import Clock, format_timestamp, parse_timestamp, utc_now
from app.utils.ids import generate_lease_owner

logger = logging.getLogger(__name__)

T = TypeVar("T")

TickOutcomeKind = Literal["missing", "busy", "noop", "reported", "expired", "finalized", "scheduled"]


@dataclass(frozen=True)
class TickOutcome:
  kind: TickOutcomeKind
  job_id: str
  status: JobStatus | None = None


@dataclass(frozen=True)
class SweepOutcome:
  requeued: list[str] = field(default_factory=list)
  unreported: list[str] = field(default_factory=list)
  purged: int = 0


async def _bounded_gather(awaitables: Iterable[Awaitable[T]], limit: int) -> list[T]:
  """Await everything with at most ``limit`` in flight; results keep input order."""
  semaphore = asyncio.Semaphore(max(limit, 1))

  async def _run(awaitable: Awaitable[T]) -> T:
    async with semaphore:
      return await awaitable

  return list(await asyncio.gather(*(_run(item) for item in awaitables)))


class OrchestratorController:
  def __init__(
    self,
    *,
    settings: Settings,
    repo: JobsRepository,
    dispatcher: DispatchClient,
    poller: StatusPoller,
    recorder: ExternalRecorder,
    enqueuer: TaskEnqueuer,
    clock: Clock = utc_now,
    lease_owner: str | None = None,
  ) -> None:
    self._settings = settings
    self._repo = repo
    self._dispatcher = dispatcher
    self._poller = poller
    self._recorder = recorder
    self._enqueuer = enqueuer
    self._clock = clock
    self._lease_owner = lease_owner or generate_lease_owner()

  async def run_tick(self, job_id: str) -> TickOutcome:
    """Advance ``job_id`` by one tick."""
    job = await self._repo.get_job(job_id, now=self._clock())
    if job is None:
      logger.info("Tick for unknown or expired job ignored job_id=%s", job_id)
      return TickOutcome(kind="missing", job_id=job_id)

    if not await self._repo.acquire_lease(job_id, self._lease_owner, now=self._clock(), lease_seconds=self._settings.tick_lease_seconds):
      logger.info("Tick skipped; lease held elsewhere job_id=%s", job_id)
      return TickOutcome(kind="busy", job_id=job_id, status=job.status)

    try:
      # Re-read under the lease so a concurrent tick's last write is seen.
      job = await self._repo.get_job(job_id, now=self._clock())
      if job is None:
        return TickOutcome(kind="missing", job_id=job_id)
      return await self._advance(job)
    except LeaseLostError:
      logger.warning("Tick aborted; lease taken over job_id=%s", job_id)
      return TickOutcome(kind="busy", job_id=job_id, status=job.status)
    finally:
      await self._repo.release_lease(job_id, self._lease_owner)

  async def _advance(self, job: JobRecord) -> TickOutcome:
    now = self._clock()
    log = JobLogger(job.job_id, clock=self._clock, logger=logger)

    if job.is_terminal:
      if job.reported_at is None:
        job = await self._report(job, log)
        return TickOutcome(kind="reported", job_id=job.job_id, status=job.status)
      return TickOutcome(kind="noop", job_id=job.job_id, status=job.status)

    if job.status == "pending":
      log.info("Orchestrator job started", entity_count=len(job.entities), concurrency=job.config.concurrency)
      job = await self._persist(replace(job, status="running"), log)

    if now > parse_timestamp(job.expires_at):
      log.error("Job expired", expires_at=job.expires_at)
      job = await self._persist(expire(job, now), log)
      job = await self._report(job, log)
      return TickOutcome(kind="expired", job_id=job.job_id, status=job.status)

    entities = await self._step_entities(job, now, log)
    job = replace(job, entities=entities, progress=compute_progress(entities))

    if all(state_machine.is_terminal(entity) for entity in entities.values()):
      job = finalize(job, now)
      log.info("Orchestration complete", status=job.status, succeeded=job.result.succeeded, failed=job.result.failed, total=job.result.total)
      job = await self._persist(job, log)
      job = await self._report(job, log)
      return TickOutcome(kind="finalized", job_id=job.job_id, status=job.status)

    delay = job.config.poll_interval_seconds
    job = await self._persist(replace(job, next_tick_at=format_timestamp(now + timedelta(seconds=delay))), log)
    try:
      await self._enqueuer.enqueue_tick(job.job_id, delay)
    except Exception:  # noqa: BLE001
      # next_tick_at is persisted, so the sweep re-delivers this tick.
      logger.exception("Failed to enqueue next tick job_id=%s", job.job_id)
    return TickOutcome(kind="scheduled", job_id=job.job_id, status=job.status)

  async def _step_entities(self, job: JobRecord, now: datetime, log: JobLogger) -> dict[str, EntityState]:
    """Run one round of dispatch and polling and return the updated entity map."""
    config = job.config
    entities = dict(job.entities)
    plan = plan_tick(entities, config.concurrency)

    # Entities persisted between acceptance and polling resume as polling.
    for entity_id in plan.to_poll:
      if entities[entity_id].status == "dispatched":
        entities[entity_id] = state_machine.start_polling(entities[entity_id], now, config)

    dispatch_results: list[DispatchResult] = await _bounded_gather(
      (self._dispatch_one(job, entity_id) for entity_id in plan.to_dispatch),
      config.concurrency,
    )
    for entity_id, result in zip(plan.to_dispatch, dispatch_results, strict=True):
      entity = entities[entity_id]
      if result.accepted and result.sub_job_id:
        entity = state_machine.apply_dispatch_accepted(entity, result.sub_job_id, now)
        entity = state_machine.start_polling(entity, now, config)
        log.info("Entity dispatched", entity_id=entity_id, sub_job_id=result.sub_job_id, attempt=entity.attempts, max_retries=config.max_retries)
      else:
        entity = state_machine.apply_dispatch_failed(entity, result.reason or "Dispatch failed", now, config)
        if entity.status == "error":
          log.error("Entity failed after max retries", entity_id=entity_id, attempts=entity.attempts, error=entity.error)
        else:
          log.warning("Dispatch failed", entity_id=entity_id, attempt=entity.attempts, error=entity.error)
      entities[entity_id] = entity

    to_probe: list[str] = []
    for entity_id in plan.to_poll:
      entity = entities[entity_id]
      if state_machine.poll_timed_out(entity, now):
        entity = state_machine.apply_attempt_failed(entity, state_machine.POLL_TIMEOUT_REASON, now, config)
        entities[entity_id] = entity
        if entity.status == "error":
          log.error("Entity failed after timeout", entity_id=entity_id, attempts=entity.attempts)
        else:
          log.warning("Poll timeout exceeded, will retry", entity_id=entity_id, attempts=entity.attempts)
      elif entity.sub_job_id:
        to_probe.append(entity_id)
      else:
        entities[entity_id] = state_machine.apply_attempt_failed(entity, "Missing sub-job id", now, config)

    poll_results: list[PollResult] = await _bounded_gather((self._probe_one(entities[entity_id].sub_job_id) for entity_id in to_probe), config.concurrency)
    for entity_id, result in zip(to_probe, poll_results, strict=True):
      entity = entities[entity_id]
      if result.state == "done":
        entity = state_machine.apply_poll_done(entity, result.result, now)
        log.success("Entity completed", entity_id=entity_id)
      elif result.state == "failed":
        entity = state_machine.apply_attempt_failed(entity, result.reason or "Unknown error", now, config)
        if entity.status == "error":
          log.error("Entity failed", entity_id=entity_id, error=entity.error)
        else:
          log.warning("Entity error, will retry", entity_id=entity_id, error=entity.error)
      entities[entity_id] = entity

    return entities

  async def _dispatch_one(self, job: JobRecord, entity_id: str) -> DispatchResult:
    try:
      return await self._dispatcher.dispatch(api_base=job.api_base, network=job.network, target=job.target, job_collection=job.job_collection, entity_id=entity_id, options=job.options)
    except Exception as exc:  # noqa: BLE001
      logger.exception("Dispatch raised job_id=%s entity_id=%s", job.job_id, entity_id)
      return DispatchResult(accepted=False, reason=f"Dispatch error: {exc}")

  async def _probe_one(self, sub_job_id: str) -> PollResult:
    try:
      return await self._poller.check(sub_job_id)
    except Exception:  # noqa: BLE001
      # Probe errors never consume an attempt; the poll deadline still applies.
      logger.exception("Status probe raised sub_job_id=%s", sub_job_id)
      return STILL_RUNNING

  async def _persist(self, job: JobRecord, log: JobLogger) -> JobRecord:
    job = log.flush_into(job, self._settings.max_log_entries)
    await self._repo.save_job(job, now=self._clock(), lease_owner=self._lease_owner)
    return job

  async def _report(self, job: JobRecord, log: JobLogger) -> JobRecord:
    """Hand the terminal job to the recorder and mark it reported."""
    job = log.flush_into(job, self._settings.max_log_entries)
    lease_seconds = self._settings.tick_lease_seconds
    if not await self._repo.acquire_lease(job.job_id, self._lease_owner, now=self._clock(), lease_seconds=lease_seconds):
      raise LeaseLostError(f"Job {job.job_id} lease is no longer held by {self._lease_owner}.")
    try:
      # Half the lease is left for the final save.
      async with asyncio.timeout(lease_seconds / 2):
        outcome = await self._recorder.record(job, self._settings.agent_id, self._settings.agent_version)
    except TimeoutError:
      log.warning("Recorder timed out", timeout_seconds=lease_seconds / 2)
    else:
      if not outcome.ok:
        log.warning("Recorder could not write every record", log_error=outcome.log.error, status_error=outcome.status.error)
    return await self._persist(replace(job, reported_at=format_timestamp(self._clock())), log)

  async def sweep(self) -> SweepOutcome:
    """Re-deliver lost ticks, re-report unreported jobs and purge expired records."""
    now = self._clock()
    batch = self._settings.sweep_batch_size
    overdue = await self._repo.find_due_ticks(before=now - timedelta(seconds=self._settings.sweep_grace_seconds), now=now, limit=batch)
    unreported = await self._repo.find_unreported(now=now, limit=batch)

    requeued: list[str] = []
    for job_id in [*overdue, *unreported]:
      try:
        await self._enqueuer.enqueue_tick(job_id, 0.0)
      except Exception:  # noqa: BLE001
        logger.exception("Sweep failed to enqueue tick job_id=%s", job_id)
        continue
      requeued.append(job_id)

    purged = await self._repo.purge_expired(now=now)
    logger.info("Sweep complete overdue=%d unreported=%d requeued=%d purged=%d", len(overdue), len(unreported), len(requeued), purged)
    return SweepOutcome(requeued=requeued, unreported=list(unreported), purged=purged)
