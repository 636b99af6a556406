from __future__ import annotations

from fastapi import HTTPException, Request, status

from app.services.runtime import EnhancementRuntime


def get_runtime(request: Request) -> EnhancementRuntime:
  """Return the runtime owned by the application lifespan."""
  runtime = getattr(request.app.state, "runtime", None)
  if runtime is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
  return runtime
