"""Shared FastAPI dependencies wiring the orchestrator's collaborators."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from app.config import Settings, get_settings
from app.core.signature import SignatureVerifier, SigningKeyProvider
from app.jobs.controller import OrchestratorController
from app.services.discovery import EntityDiscovery
from app.services.dispatch_client import DispatchClient
from app.services.orchestration import OrchestrationService
from app.services.recorder import ExternalRecorder
from app.services.status_poller import StatusPoller
from app.services.tasks.factory import get_task_enqueuer
from app.services.tasks.interface import TaskEnqueuer
from app.storage.jobs_repo import JobsRepository
from app.storage.postgres_jobs_repo import PostgresJobsRepository


@lru_cache(maxsize=1)
def get_jobs_repo() -> JobsRepository:
  return PostgresJobsRepository(record_ttl_seconds=get_settings().record_ttl_seconds)


@lru_cache(maxsize=1)
def get_enqueuer() -> TaskEnqueuer:
  return get_task_enqueuer(get_settings())


@lru_cache(maxsize=1)
def get_signature_verifier() -> SignatureVerifier | None:
  """Build the verifier once so the signing key cache lives for the process."""
  settings = get_settings()
  if not settings.verify_signatures:
    return None
  if not settings.api_base:
    raise RuntimeError("ORCH_API_BASE is required when signature verification is enabled.")
  provider = SigningKeyProvider(settings.api_base, ttl_seconds=settings.signing_key_ttl_seconds, timeout_seconds=settings.http_timeout_seconds)
  return SignatureVerifier(provider, max_age_seconds=settings.signature_max_age_seconds, future_tolerance_seconds=settings.signature_future_tolerance_seconds)


def get_orchestration_service(
  settings: Annotated[Settings, Depends(get_settings)],
  repo: Annotated[JobsRepository, Depends(get_jobs_repo)],
  enqueuer: Annotated[TaskEnqueuer, Depends(get_enqueuer)],
  verifier: Annotated[SignatureVerifier | None, Depends(get_signature_verifier)],
) -> OrchestrationService:
  return OrchestrationService(settings=settings, repo=repo, discovery=EntityDiscovery(settings), enqueuer=enqueuer, verifier=verifier)


def get_controller(
  settings: Annotated[Settings, Depends(get_settings)],
  repo: Annotated[JobsRepository, Depends(get_jobs_repo)],
  enqueuer: Annotated[TaskEnqueuer, Depends(get_enqueuer)],
) -> OrchestratorController:
  return OrchestratorController(settings=settings, repo=repo, dispatcher=DispatchClient(settings), poller=StatusPoller(settings), recorder=ExternalRecorder(settings), enqueuer=enqueuer)
