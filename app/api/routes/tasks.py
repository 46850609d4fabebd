from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from starlette.responses import Response

from app.api.deps import get_controller
from app.api.models import SweepResponse, TickRequest, TickResponse
from app.api.msgspec_utils import decode_msgspec_body, encode_msgspec_response
from app.config import Settings, get_settings
from app.jobs.controller import OrchestratorController

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


def require_task_secret(settings: Annotated[Settings, Depends(get_settings)], authorization: str | None = Header(default=None), x_task_secret: str | None = Header(default=None)) -> None:
  """Authenticate internal task deliveries with the shared secret."""
  # Deny by default when no secret is configured.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  # Cloud Tasks OIDC may occupy Authorization, so the dedicated header is checked too.
  shared_secret_valid = secrets.compare_digest(x_task_secret or "", settings.task_secret)
  bearer_valid = secrets.compare_digest(authorization or "", f"Bearer {settings.task_secret}")
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to internal task endpoint")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")


@router.post("/tick", dependencies=[Depends(require_task_secret)])
async def run_tick(request: Request, controller: Annotated[OrchestratorController, Depends(get_controller)]) -> Response:
  """Advance one job by one tick and report what happened."""
  payload = decode_msgspec_body(await request.body(), TickRequest)
  outcome = await controller.run_tick(payload.job_id)
  logger.info("Tick processed job_id=%s outcome=%s status=%s", outcome.job_id, outcome.kind, outcome.status)
  return encode_msgspec_response(TickResponse(outcome=outcome.kind, job_id=outcome.job_id, status=outcome.status))


@router.post("/sweep", dependencies=[Depends(require_task_secret)])
async def run_sweep(controller: Annotated[OrchestratorController, Depends(get_controller)]) -> Response:
  """Recover lost ticks and purge expired records."""
  outcome = await controller.sweep()
  return encode_msgspec_response(SweepResponse(requeued=outcome.requeued, unreported=outcome.unreported, purged=outcome.purged))
