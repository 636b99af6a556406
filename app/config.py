"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_STORE_BACKENDS = {"postgres", "memory"}
_QUEUE_BACKENDS = {"inprocess", "cloud-tasks"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the enhancement service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  pg_statement_timeout_ms: int
  store_backend: str
  base_url: str
  task_secret: str | None
  queue_backend: str
  cloud_tasks_queue_path: str | None
  cloud_tasks_service_account: str | None
  render_provider: str
  render_model: str
  provider_webhook_url: str | None
  webhook_secret: str
  dispatch_timeout_seconds: float
  outbox_max_attempts: int
  outbox_backoff_base_ms: int
  outbox_backoff_max_ms: int
  outbox_lease_seconds: int
  outbox_poll_interval_seconds: float
  outbox_batch_size: int
  progress_keepalive_seconds: float
  progress_queue_size: int
  mock_render_delay_seconds: float


@dataclass(frozen=True)
class DatabaseSettings:
  """Settings needed to open a database connection (migrations, scripts)."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  pg_statement_timeout_ms: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("POOLVISUAL_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("POOLVISUAL_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("POOLVISUAL_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

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

  environment = os.getenv("POOLVISUAL_ENV", "development").lower()
  debug = _parse_bool(os.getenv("POOLVISUAL_DEBUG"))

  log_max_bytes = _positive_int("POOLVISUAL_LOG_MAX_BYTES", "5242880")
  log_backup_count = int(os.getenv("POOLVISUAL_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("POOLVISUAL_LOG_BACKUP_COUNT must be zero or a positive integer.")

  store_backend = (os.getenv("POOLVISUAL_STORE_BACKEND") or "postgres").strip().lower()
  if store_backend not in _STORE_BACKENDS:
    raise ValueError(f"POOLVISUAL_STORE_BACKEND must be one of {sorted(_STORE_BACKENDS)}.")

  pg_dsn = os.getenv("POOLVISUAL_PG_DSN") or os.getenv("DATABASE_URL")
  if store_backend == "postgres" and not pg_dsn:
    raise ValueError("POOLVISUAL_PG_DSN must be set when POOLVISUAL_STORE_BACKEND=postgres.")

  queue_backend = (os.getenv("POOLVISUAL_QUEUE_BACKEND") or "inprocess").strip().lower()
  if queue_backend not in _QUEUE_BACKENDS:
    raise ValueError(f"POOLVISUAL_QUEUE_BACKEND must be one of {sorted(_QUEUE_BACKENDS)}.")

  task_secret = _optional_str(os.getenv("POOLVISUAL_TASK_SECRET"))
  cloud_tasks_queue_path = _optional_str(os.getenv("POOLVISUAL_CLOUD_TASKS_QUEUE_PATH"))
  # Cloud Tasks calls back into the drain endpoint, which is guarded by the task secret.
  if queue_backend == "cloud-tasks":
    if not cloud_tasks_queue_path:
      raise ValueError("POOLVISUAL_CLOUD_TASKS_QUEUE_PATH must be set when POOLVISUAL_QUEUE_BACKEND=cloud-tasks.")
    if not task_secret:
      raise ValueError("POOLVISUAL_TASK_SECRET must be set when POOLVISUAL_QUEUE_BACKEND=cloud-tasks.")

  render_provider = (os.getenv("POOLVISUAL_RENDER_PROVIDER") or "webhook").strip().lower()
  provider_webhook_url = _optional_str(os.getenv("POOLVISUAL_PROVIDER_WEBHOOK_URL"))
  if render_provider == "webhook" and not provider_webhook_url:
    raise ValueError("POOLVISUAL_PROVIDER_WEBHOOK_URL must be set when POOLVISUAL_RENDER_PROVIDER=webhook.")

  webhook_secret = _optional_str(os.getenv("POOLVISUAL_WEBHOOK_SECRET"))
  if not webhook_secret:
    raise ValueError("POOLVISUAL_WEBHOOK_SECRET must be set.")

  outbox_max_attempts = _positive_int("POOLVISUAL_OUTBOX_MAX_ATTEMPTS", "3")
  outbox_backoff_base_ms = _positive_int("POOLVISUAL_OUTBOX_BACKOFF_BASE_MS", "5000")
  outbox_backoff_max_ms = _positive_int("POOLVISUAL_OUTBOX_BACKOFF_MAX_MS", "30000")
  if outbox_backoff_max_ms < outbox_backoff_base_ms:
    raise ValueError("POOLVISUAL_OUTBOX_BACKOFF_MAX_MS must be >= POOLVISUAL_OUTBOX_BACKOFF_BASE_MS.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("POOLVISUAL_ALLOWED_ORIGINS")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("POOLVISUAL_LOG_HTTP_4XX")),
    pg_dsn=pg_dsn,
    pg_connect_timeout=_positive_int("POOLVISUAL_PG_CONNECT_TIMEOUT", "5"),
    pg_statement_timeout_ms=_positive_int("POOLVISUAL_PG_STATEMENT_TIMEOUT_MS", "15000"),
    store_backend=store_backend,
    base_url=(os.getenv("POOLVISUAL_BASE_URL") or "http://localhost:8000").strip().rstrip("/"),
    task_secret=task_secret,
    queue_backend=queue_backend,
    cloud_tasks_queue_path=cloud_tasks_queue_path,
    cloud_tasks_service_account=_optional_str(os.getenv("POOLVISUAL_CLOUD_TASKS_SERVICE_ACCOUNT")),
    render_provider=render_provider,
    render_model=(os.getenv("POOLVISUAL_RENDER_MODEL") or "sdxl").strip(),
    provider_webhook_url=provider_webhook_url,
    webhook_secret=webhook_secret,
    dispatch_timeout_seconds=_positive_float("POOLVISUAL_DISPATCH_TIMEOUT_SECONDS", "30"),
    outbox_max_attempts=outbox_max_attempts,
    outbox_backoff_base_ms=outbox_backoff_base_ms,
    outbox_backoff_max_ms=outbox_backoff_max_ms,
    outbox_lease_seconds=_positive_int("POOLVISUAL_OUTBOX_LEASE_SECONDS", "120"),
    outbox_poll_interval_seconds=_positive_float("POOLVISUAL_OUTBOX_POLL_INTERVAL_SECONDS", "5"),
    outbox_batch_size=_positive_int("POOLVISUAL_OUTBOX_BATCH_SIZE", "10"),
    progress_keepalive_seconds=_positive_float("POOLVISUAL_PROGRESS_KEEPALIVE_SECONDS", "15"),
    progress_queue_size=_positive_int("POOLVISUAL_PROGRESS_QUEUE_SIZE", "100"),
    mock_render_delay_seconds=_positive_float("POOLVISUAL_MOCK_RENDER_DELAY_SECONDS", "1.5"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring the web runtime configuration."""
  # Migrations and scripts must not need provider or CORS variables.
  return DatabaseSettings(
    debug=_parse_bool(os.getenv("POOLVISUAL_DEBUG")),
    pg_dsn=os.getenv("POOLVISUAL_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("POOLVISUAL_PG_CONNECT_TIMEOUT", "5"),
    pg_statement_timeout_ms=_positive_int("POOLVISUAL_PG_STATEMENT_TIMEOUT_MS", "15000"),
  )
