"""Service layer behind the intake and status endpoints."""

from __future__ import annotations

import logging

import httpx
import msgspec
from sqlalchemy.exc import SQLAlchemyError

from app.api.models import IntakeAccepted, IntakeRequest, JobStatusResponse
from app.config import Settings
from app.core.signature import SignatureVerificationError, SignatureVerifier, SigningKeyUnavailableError
from app.jobs.errors import DiscoveryError, IntakeRejectedError, InvalidOptionsError
from app.jobs.job_logger import JobLogger
from app.jobs.models import JobRecord, new_job_record, resolve_config
from app.services.discovery import EntityDiscovery
from app.services.tasks.interface import TaskEnqueuer
from app.storage.jobs_repo import JobsRepository
from app.utils.clock import Clock, format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

_STORE_ERRORS = (SQLAlchemyError, OSError)


def status_response(job: JobRecord) -> JobStatusResponse:
  return JobStatusResponse(job_id=job.job_id, status=job.status, progress=job.progress, started_at=job.started_at, result=job.result, error=job.error, completed_at=job.completed_at)


def _require_text(value: str, field_name: str) -> str:
  value = value.strip()
  if not value:
    raise IntakeRejectedError(400, f"Missing required field: {field_name}")
  return value


def _require_base_url(value: str, field_name: str) -> str:
  value = _require_text(value, field_name)
  try:
    url = httpx.URL(value)
  except httpx.InvalidURL as exc:
    raise IntakeRejectedError(400, f"{field_name} must be an absolute http(s) URL") from exc
  if url.scheme not in ("http", "https") or not url.host:
    raise IntakeRejectedError(400, f"{field_name} must be an absolute http(s) URL")
  return value


class OrchestrationService:
  def __init__(self, *, settings: Settings, repo: JobsRepository, discovery: EntityDiscovery, enqueuer: TaskEnqueuer, verifier: SignatureVerifier | None, clock: Clock = utc_now) -> None:
    self._settings = settings
    self._repo = repo
    self._discovery = discovery
    self._enqueuer = enqueuer
    self._verifier = verifier
    self._clock = clock

  def _unavailable(self, error: str) -> IntakeRejectedError:
    return IntakeRejectedError(503, error, retry_after=self._settings.intake_retry_after_seconds)

  async def _check_signature(self, body: bytes, signature_header: str | None) -> None:
    if not self._settings.verify_signatures:
      return
    if self._verifier is None:
      raise RuntimeError("Signature verification is enabled but no verifier is configured.")
    try:
      await self._verifier.verify(body, signature_header)
    except SignatureVerificationError as exc:
      logger.warning("Rejected intake signature: %s", exc)
      raise IntakeRejectedError(401, str(exc)) from exc
    except SigningKeyUnavailableError as exc:
      logger.error("Signing key unavailable: %s", exc)
      raise self._unavailable("Signing key unavailable") from exc

  async def intake(self, body: bytes, signature_header: str | None) -> IntakeAccepted:
    """Validate, create and schedule a job. Duplicate job ids are accepted without side effects."""
    await self._check_signature(body, signature_header)

    try:
      request = msgspec.json.decode(body, type=IntakeRequest)
    except msgspec.DecodeError as exc:
      raise IntakeRejectedError(400, f"Invalid request payload: {exc}") from exc

    job_id = _require_text(request.job_id, "job_id")
    target = _require_text(request.target, "target")
    job_collection = _require_text(request.job_collection, "job_collection")
    api_base = _require_base_url(request.api_base, "api_base")
    try:
      expires_at = format_timestamp(parse_timestamp(request.expires_at))
    except ValueError as exc:
      raise IntakeRejectedError(400, "expires_at must be an ISO-8601 timestamp") from exc

    now = self._clock()
    try:
      existing = await self._repo.get_job(job_id, now=now)
    except _STORE_ERRORS as exc:
      logger.error("Job store unavailable during intake job_id=%s", job_id, exc_info=True)
      raise self._unavailable("Job store unavailable") from exc
    if existing is not None:
      logger.info("Job %s already exists, returning current status", job_id)
      return IntakeAccepted(job_id=job_id)

    options = (request.input.options if request.input else None) or {}
    try:
      config = resolve_config(options, self._settings)
    except InvalidOptionsError as exc:
      raise IntakeRejectedError(400, str(exc)) from exc

    log = JobLogger(job_id, clock=self._clock, logger=logger)
    log.info("Initializing orchestrator job", job_id=job_id)
    entity_ids = request.input.entity_ids if request.input else None
    if not entity_ids:
      log.info("Discovering entities in collection", target=target)
      discover_type = options.get("discover_type")
      try:
        entity_ids = await self._discovery.discover(api_base=api_base, network=request.network, target=target, entity_type=discover_type if isinstance(discover_type, str) else None)
      except DiscoveryError as exc:
        logger.error("Discovery failed job_id=%s error=%s", job_id, exc)
        raise self._unavailable(str(exc)) from exc
      if not entity_ids:
        raise IntakeRejectedError(400, "No entities found in collection")
      log.info("Discovery complete", entity_count=len(entity_ids))

    job = new_job_record(
      job_id=job_id,
      target=target,
      job_collection=job_collection,
      api_base=api_base,
      expires_at=expires_at,
      entity_ids=entity_ids,
      config=config,
      started_at=format_timestamp(now),
      network=request.network,
      log_target=request.log.pi if request.log else None,
      options=options,
    )
    job.next_tick_at = job.started_at
    job = log.flush_into(job, self._settings.max_log_entries)

    try:
      created = await self._repo.create_job(job, now=now)
    except _STORE_ERRORS as exc:
      logger.error("Job store unavailable during intake job_id=%s", job_id, exc_info=True)
      raise self._unavailable("Job store unavailable") from exc
    if not created:
      logger.info("Job %s was created concurrently, returning current status", job_id)
      return IntakeAccepted(job_id=job_id)

    logger.info("Orchestrator job accepted job_id=%s entity_count=%d concurrency=%d", job_id, len(job.entities), config.concurrency)
    try:
      await self._enqueuer.enqueue_tick(job_id, 0.0)
    except Exception:  # noqa: BLE001
      # next_tick_at is already due, so the sweep delivers the first tick.
      logger.exception("Failed to enqueue first tick job_id=%s", job_id)
    return IntakeAccepted(job_id=job_id)

  async def get_status(self, job_id: str) -> JobStatusResponse | None:
    job = await self._repo.get_job(job_id, now=self._clock())
    if job is None:
      return None
    return status_response(job)
