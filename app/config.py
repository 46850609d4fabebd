"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_TASK_PROVIDERS = {"local-http", "gcp"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the orchestrator service."""

  environment: str
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  auto_create_schema: bool
  agent_id: str
  agent_version: str
  api_base: str | None
  api_key: str | None
  sub_agent_id: str
  sub_agent_endpoint: str
  default_max_retries: int
  default_concurrency: int
  max_concurrency: int
  poll_interval_seconds: float
  poll_timeout_seconds: float
  dispatch_expires_in_seconds: int
  http_timeout_seconds: float
  record_ttl_seconds: int
  tick_lease_seconds: int
  sweep_grace_seconds: int
  sweep_batch_size: int
  sweep_interval_seconds: int
  max_log_entries: int
  discovery_page_size: int
  verify_signatures: bool
  signature_header: str
  signing_key_ttl_seconds: int
  signature_max_age_seconds: int
  signature_future_tolerance_seconds: int
  intake_retry_after_seconds: int
  recorder_max_attempts: int
  recorder_base_delay_ms: int
  recorder_jitter_ms: int
  task_service_provider: str
  cloud_tasks_queue_path: str | None
  base_url: str | None
  task_secret: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("ORCH_ENV", "development").lower()
  debug = _parse_bool(os.getenv("ORCH_DEBUG"))

  log_max_bytes = _positive_int("ORCH_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("ORCH_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("ORCH_LOG_BACKUP_COUNT must be zero or a positive integer.")

  default_concurrency = _positive_int("ORCH_DEFAULT_CONCURRENCY", "5")
  max_concurrency = _positive_int("ORCH_MAX_CONCURRENCY", "100")
  if default_concurrency > max_concurrency:
    raise ValueError("ORCH_DEFAULT_CONCURRENCY must not exceed ORCH_MAX_CONCURRENCY.")

  # Tick transport selection decides how the next tick reaches this service.
  task_service_provider = os.getenv("ORCH_TASK_SERVICE_PROVIDER", "local-http").strip().lower()
  if task_service_provider not in _TASK_PROVIDERS:
    raise ValueError(f"ORCH_TASK_SERVICE_PROVIDER must be one of {sorted(_TASK_PROVIDERS)}.")

  recorder_max_attempts = _positive_int("ORCH_RECORDER_MAX_ATTEMPTS", "3")

  # Zero disables the in-process sweep timer; hosted deployments trigger the sweep externally.
  sweep_interval_seconds = int(os.getenv("ORCH_SWEEP_INTERVAL_SECONDS", "60"))
  if sweep_interval_seconds < 0:
    raise ValueError("ORCH_SWEEP_INTERVAL_SECONDS must be zero or a positive integer.")

  return Settings(
    environment=environment,
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("ORCH_LOG_HTTP_4XX")),
    pg_dsn=_optional_str(os.getenv("ORCH_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL")),
    pg_connect_timeout=_positive_int("ORCH_PG_CONNECT_TIMEOUT", "5"),
    auto_create_schema=_parse_bool(os.getenv("ORCH_AUTO_CREATE_SCHEMA")),
    agent_id=os.getenv("ORCH_AGENT_ID", "fanout-orchestrator").strip(),
    agent_version=os.getenv("ORCH_AGENT_VERSION", "0.1.0").strip(),
    api_base=_optional_str(os.getenv("ORCH_API_BASE")),
    api_key=_optional_str(os.getenv("ORCH_API_KEY")),
    sub_agent_id=os.getenv("ORCH_SUB_AGENT_ID", "").strip(),
    sub_agent_endpoint=os.getenv("ORCH_SUB_AGENT_ENDPOINT", "").strip().rstrip("/"),
    default_max_retries=_positive_int("ORCH_DEFAULT_MAX_RETRIES", "3"),
    default_concurrency=default_concurrency,
    max_concurrency=max_concurrency,
    poll_interval_seconds=_positive_float("ORCH_POLL_INTERVAL_SECONDS", "2"),
    poll_timeout_seconds=_positive_float("ORCH_POLL_TIMEOUT_SECONDS", "300"),
    dispatch_expires_in_seconds=_positive_int("ORCH_DISPATCH_EXPIRES_IN_SECONDS", "7200"),
    http_timeout_seconds=_positive_float("ORCH_HTTP_TIMEOUT_SECONDS", "30"),
    record_ttl_seconds=_positive_int("ORCH_RECORD_TTL_SECONDS", "86400"),
    tick_lease_seconds=_positive_int("ORCH_TICK_LEASE_SECONDS", "120"),
    sweep_grace_seconds=_positive_int("ORCH_SWEEP_GRACE_SECONDS", "60"),
    sweep_batch_size=_positive_int("ORCH_SWEEP_BATCH_SIZE", "50"),
    sweep_interval_seconds=sweep_interval_seconds,
    max_log_entries=_positive_int("ORCH_MAX_LOG_ENTRIES", "500"),
    discovery_page_size=_positive_int("ORCH_DISCOVERY_PAGE_SIZE", "1000"),
    verify_signatures=_parse_bool(os.getenv("ORCH_VERIFY_SIGNATURES"), default=True),
    signature_header=os.getenv("ORCH_SIGNATURE_HEADER", "X-Platform-Signature").strip(),
    signing_key_ttl_seconds=_positive_int("ORCH_SIGNING_KEY_TTL_SECONDS", "3600"),
    signature_max_age_seconds=_positive_int("ORCH_SIGNATURE_MAX_AGE_SECONDS", "300"),
    signature_future_tolerance_seconds=_positive_int("ORCH_SIGNATURE_FUTURE_TOLERANCE_SECONDS", "60"),
    intake_retry_after_seconds=_positive_int("ORCH_INTAKE_RETRY_AFTER_SECONDS", "30"),
    recorder_max_attempts=recorder_max_attempts,
    recorder_base_delay_ms=_positive_int("ORCH_RECORDER_BASE_DELAY_MS", "100"),
    recorder_jitter_ms=_positive_int("ORCH_RECORDER_JITTER_MS", "100"),
    task_service_provider=task_service_provider,
    cloud_tasks_queue_path=_optional_str(os.getenv("ORCH_CLOUD_TASKS_QUEUE_PATH")),
    base_url=_optional_str(os.getenv("ORCH_BASE_URL")),
    task_secret=_optional_str(os.getenv("ORCH_TASK_SECRET")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration."""
  # Keep database configuration isolated so migrations and offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("ORCH_DEBUG"))
  pg_connect_timeout = int(os.getenv("ORCH_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("ORCH_PG_CONNECT_TIMEOUT must be a positive integer.")

  # Support fallback to DATABASE_URL for hosted Postgres providers.
  pg_dsn = os.getenv("ORCH_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
