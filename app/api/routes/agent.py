from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.responses import Response

from app.api.deps import get_orchestration_service
from app.api.models import HealthResponse
from app.api.msgspec_utils import encode_msgspec_response
from app.config import Settings, get_settings
from app.services.orchestration import OrchestrationService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/process", status_code=status.HTTP_202_ACCEPTED)
async def process_job(request: Request, service: Annotated[OrchestrationService, Depends(get_orchestration_service)], settings: Annotated[Settings, Depends(get_settings)]) -> Response:
  """Accept a signed job request and schedule its first tick."""
  # The signature covers the exact bytes received, so read the raw body.
  body = await request.body()
  accepted = await service.intake(body, request.headers.get(settings.signature_header))
  return encode_msgspec_response(accepted, status_code=status.HTTP_202_ACCEPTED)


@router.get("/status/{job_id}")
async def get_job_status(job_id: str, service: Annotated[OrchestrationService, Depends(get_orchestration_service)]) -> Response:
  """Return the last committed state of a job."""
  job_status = await service.get_status(job_id)
  if job_status is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
  return encode_msgspec_response(job_status)


@router.get("/health")
async def health_check(settings: Annotated[Settings, Depends(get_settings)]) -> Response:
  payload = HealthResponse(status="ok", type="orchestrator", description="Parallel entity processing orchestrator", agent_id=settings.agent_id, version=settings.agent_version)
  return encode_msgspec_response(payload)
