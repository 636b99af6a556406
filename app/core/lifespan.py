import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from app.core.logging import _initialize_logging
from app.services.runtime import EnhancementRuntime


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


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Configure logging, then build and own the enhancement runtime."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")
  _initialize_logging(settings)
  logger.info("Starting environment=%s store=%s dsn=%s", settings.environment, settings.store_backend, _redact_dsn(settings.pg_dsn))

  # Construction errors (unknown provider, bad DSN) must stop startup.
  runtime = EnhancementRuntime.build(settings)
  app.state.runtime = runtime
  await runtime.start()
  try:
    yield
  finally:
    await runtime.stop()
    app.state.runtime = None
