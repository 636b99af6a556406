from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import credits, enhancements, tasks
from app.config import get_settings
from app.core.exceptions import enhancement_exception_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from app.core.lifespan import lifespan
from app.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from app.jobs.errors import EnhancementError

settings = get_settings()

app = FastAPI(title="PoolVisual Enhancement Engine", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None if settings.environment == "production" else "/openapi.json")

app.add_middleware(
  CORSMiddleware,
  allow_origins=list(settings.allowed_origins),
  allow_credentials=True,
  allow_methods=["GET", "POST", "OPTIONS"],
  allow_headers=["content-type", "authorization", "x-user-id", "x-tenant-id", "x-request-id"],
  expose_headers=["content-length", "x-request-id"],
)

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(EnhancementError, enhancement_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(enhancements.router, prefix="/v1/enhancements", tags=["enhancements"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
app.include_router(tasks.router, prefix="/internal", tags=["internal"])
