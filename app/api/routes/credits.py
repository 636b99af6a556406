from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_runtime
from app.api.models import BalanceResponse, CostEstimateResponse, CreditEntryResponse, CreditHistoryResponse
from app.core.security import Principal, get_current_principal
from app.services.credits import estimate_cost
from app.services.runtime import EnhancementRuntime

router = APIRouter()


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(runtime: Annotated[EnhancementRuntime, Depends(get_runtime)], principal: Annotated[Principal, Depends(get_current_principal)]) -> BalanceResponse:
  balance = await runtime.ledger.get_balance(principal.user_id)
  return BalanceResponse(balance=balance)


@router.get("/history", response_model=CreditHistoryResponse)
async def get_history(
  runtime: Annotated[EnhancementRuntime, Depends(get_runtime)], principal: Annotated[Principal, Depends(get_current_principal)], limit: Annotated[int, Query(ge=1, le=200)] = 50
) -> CreditHistoryResponse:
  """Ledger entries newest first, with the current balance."""
  entries = await runtime.ledger.history(principal.user_id, limit=limit)
  balance = await runtime.ledger.get_balance(principal.user_id)
  return CreditHistoryResponse(balance=balance, entries=[CreditEntryResponse.from_entry(entry) for entry in entries])


@router.get("/calculate", response_model=CostEstimateResponse)
async def calculate_cost(enhancement_type: Annotated[str, Query(alias="enhancementType", max_length=64)] = "basic", has_mask: Annotated[bool, Query(alias="hasMask")] = False) -> CostEstimateResponse:
  """Quote the credit cost of an enhancement before submitting it."""
  return CostEstimateResponse(enhancement_type=enhancement_type, has_mask=has_mask, credits=estimate_cost(enhancement_type, has_mask))
