import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from app.api.deps import get_enqueuer
from app.config import Settings, get_settings
from app.core.database import Base, dispose_engine, get_db_engine
from app.core.logging import initialize_logging
from app.services.tasks.local import LocalHttpEnqueuer


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"


async def _create_schema(logger: logging.Logger) -> None:
  """Create tables directly for local development; deployed databases use alembic."""
  import app.schema  # noqa: F401

  engine = get_db_engine()
  if engine is None:
    logger.warning("ORCH_AUTO_CREATE_SCHEMA is set but no database is configured.")
    return
  async with engine.begin() as connection:
    await connection.run_sync(Base.metadata.create_all)
  logger.info("Database schema ensured.")


async def _sweep_timer(interval_seconds: int, logger: logging.Logger) -> None:
  """Schedule a sweep every ``interval_seconds`` through the configured tick transport."""
  enqueuer = get_enqueuer()
  while True:
    await asyncio.sleep(interval_seconds)
    try:
      await enqueuer.enqueue_sweep()
    except Exception:  # noqa: BLE001
      logger.exception("Failed to schedule sweep")


def _start_sweep_timer(settings: Settings, logger: logging.Logger) -> asyncio.Task[None] | None:
  # Cloud Tasks deployments drive the sweep from Cloud Scheduler instead.
  if settings.sweep_interval_seconds == 0 or settings.task_service_provider != "local-http":
    return None
  logger.info("Starting sweep timer interval_s=%d", settings.sweep_interval_seconds)
  return asyncio.create_task(_sweep_timer(settings.sweep_interval_seconds, logger))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging and storage on startup and release them on shutdown."""
  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  initialize_logging(settings)
  logger.info("Starting orchestrator agent_id=%s version=%s environment=%s task_provider=%s", settings.agent_id, settings.agent_version, settings.environment, settings.task_service_provider)
  logger.info("Database DSN=%s", _redact_dsn(settings.pg_dsn))
  if not settings.verify_signatures:
    logger.warning("Signature verification is disabled; intake accepts unsigned requests.")

  if settings.auto_create_schema:
    await _create_schema(logger)

  sweep_task = _start_sweep_timer(settings, logger)
  try:
    yield
  finally:
    if sweep_task is not None:
      sweep_task.cancel()
      await asyncio.gather(sweep_task, return_exceptions=True)
      enqueuer = get_enqueuer()
      if isinstance(enqueuer, LocalHttpEnqueuer):
        await enqueuer.aclose()
    await dispose_engine()
    logger.info("Shutdown complete.")
