from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.api.deps import get_runtime
from app.api.models import DrainRequest, DrainResponse, GrantCreditsRequest, GrantCreditsResponse
from app.core.security import require_task_secret
from app.services.runtime import EnhancementRuntime

router = APIRouter(dependencies=[Depends(require_task_secret)])
logger = logging.getLogger(__name__)


@router.post("/tasks/drain-outbox", response_model=DrainResponse, status_code=status.HTTP_200_OK)
async def drain_outbox_task(runtime: Annotated[EnhancementRuntime, Depends(get_runtime)], payload: DrainRequest | None = None) -> DrainResponse:
  """
  Handler for Cloud Tasks drain triggers.
  Drains whatever is due, not only the job named in the payload.
  """
  job_id = payload.job_id if payload else None
  logger.info("Received drain task job_id=%s", job_id)
  reports = await runtime.dispatcher.drain()
  outcomes = {str(report.outbox_id): report.outcome for report in reports}
  return DrainResponse(processed=len(reports), outcomes=outcomes)


@router.post("/credits/grant", response_model=GrantCreditsResponse)
async def grant_credits(request: GrantCreditsRequest, runtime: Annotated[EnhancementRuntime, Depends(get_runtime)]) -> GrantCreditsResponse:
  """Add subscription, top-up, or adjustment credits to an account."""
  balance = await runtime.ledger.add_credits(request.account_id, request.amount, request.source_type, request.description, tenant_id=request.tenant_id)
  return GrantCreditsResponse(account_id=request.account_id, balance=balance)
