from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

TASK_SECRET_HEADER = "x-poolvisual-task-secret"


@dataclass(frozen=True)
class Principal:
  """Caller identity forwarded by the upstream auth gateway."""

  user_id: str
  tenant_id: str


async def get_current_principal(x_user_id: Annotated[str | None, Header()] = None, x_tenant_id: Annotated[str | None, Header()] = None) -> Principal:
  """Resolve the authenticated caller from gateway headers."""
  user_id = (x_user_id or "").strip()
  if not user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity")
  # Single-tenant deployments omit the tenant header; the user then owns its own tenant.
  tenant_id = (x_tenant_id or "").strip() or user_id
  return Principal(user_id=user_id, tenant_id=tenant_id)


async def require_task_secret(request: Request, settings: Annotated[Settings, Depends(get_settings)]) -> None:
  """Guard internal endpoints with the shared task secret."""
  # Secure-by-default: internal endpoints stay closed when no secret is configured.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  provided = request.headers.get(TASK_SECRET_HEADER) or ""
  authorization = request.headers.get("authorization") or ""
  # Cloud Tasks OIDC occupies Authorization for Cloud Run auth, so the dedicated header is checked first.
  shared_secret_valid = secrets.compare_digest(provided, settings.task_secret)
  bearer_valid = secrets.compare_digest(authorization, f"Bearer {settings.task_secret}")
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to %s", request.url.path)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")
