"""Credit pricing and the reservation ledger."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from app.jobs.models import CREDIT_SOURCE_TYPES, CreditEntry, CreditSourceType
from app.storage.repositories import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)

DEFAULT_ENHANCEMENT_TYPE = "basic"
FALLBACK_COST = 2
MASKED_COST = 10
UNMASKED_COST = 2

_COST_TABLE: dict[str, int] = {
  "image_enhancement": 2,
  "declutter": 2,
  "brighten": 2,
  "cleanup": 2,
  "basic": 2,
  "blend_materials": 5,
  "material": 5,
  "day_to_dusk": 6,
  "sky": 6,
  "stage_room": 6,
  "staging": 6,
  "add_decoration": 6,
  "decorate": 6,
  "item_removal": 10,
  "brush": 10,
}

_MASK_DEPENDENT_TYPES = frozenset({"add_pool", "custom"})


def _utc_now() -> datetime:
  return datetime.now(UTC)


def estimate_cost(enhancement_type: str | None, has_mask: bool = False) -> int:
  """Return the credit cost of one enhancement of the given type."""
  normalized = (enhancement_type or "").strip().lower() or DEFAULT_ENHANCEMENT_TYPE
  # Mask-dependent types bill the masked region as a full edit.
  if normalized in _MASK_DEPENDENT_TYPES or "custom" in normalized:
    return MASKED_COST if has_mask else UNMASKED_COST

  cost = _COST_TABLE.get(normalized)
  if cost is None:
    logger.warning("Unknown enhancement type %r; charging fallback cost %d", enhancement_type, FALLBACK_COST)
    return FALLBACK_COST
  return cost


@dataclass(frozen=True)
class Reservation:
  reserved: bool
  new_balance: int


class CreditLedger:
  """Balance mutations, each mirrored by one ledger entry in the same transaction."""

  def __init__(self, uow_factory: UnitOfWorkFactory, *, clock: Callable[[], datetime] = _utc_now) -> None:
    self._uow_factory = uow_factory
    self._clock = clock

  async def reserve(self, account_id: str, credits: int, *, uow: UnitOfWork, job_id: str | None = None) -> Reservation:
    """Debit credits inside the caller's unit of work when the balance allows it."""
    if credits <= 0:
      raise ValueError("Reservation amount must be positive.")

    balance = await uow.credits.lock_balance(account_id)
    # A missing account has nothing to spend.
    if balance is None:
      logger.info("Credit reservation refused account_id=%s required=%d (no account)", account_id, credits)
      return Reservation(reserved=False, new_balance=0)
    if balance < credits:
      logger.info("Credit reservation refused account_id=%s required=%d balance=%d", account_id, credits, balance)
      return Reservation(reserved=False, new_balance=balance)

    now = self._clock()
    new_balance = balance - credits
    await uow.credits.set_balance(account_id, new_balance, now=now)
    await uow.credits.append_entry(CreditEntry(account_id=account_id, delta=-credits, balance_after=new_balance, source_type="reservation", created_at=now, description="Enhancement reservation", job_id=job_id))
    logger.info("Reserved credits account_id=%s job_id=%s credits=%d balance=%d", account_id, job_id, credits, new_balance)
    return Reservation(reserved=True, new_balance=new_balance)

  async def refund(self, account_id: str, credits: int, *, uow: UnitOfWork, job_id: str | None = None, reason: str | None = None) -> int:
    """Credit back a reservation; callers guarantee this runs once per job."""
    if credits < 0:
      raise ValueError("Refund amount cannot be negative.")

    now = self._clock()
    balance = await uow.credits.lock_balance(account_id)
    if credits == 0:
      return balance or 0
    if balance is None:
      await uow.credits.ensure_account(account_id, tenant_id=None, now=now)
      balance = 0

    new_balance = balance + credits
    await uow.credits.set_balance(account_id, new_balance, now=now)
    await uow.credits.append_entry(CreditEntry(account_id=account_id, delta=credits, balance_after=new_balance, source_type="refund", created_at=now, description=reason or "Enhancement refund", job_id=job_id))
    logger.info("Refunded credits account_id=%s job_id=%s credits=%d balance=%d reason=%s", account_id, job_id, credits, new_balance, reason)
    return new_balance

  async def add_credits(self, account_id: str, amount: int, source_type: CreditSourceType, description: str | None = None, *, tenant_id: str | None = None, uow: UnitOfWork | None = None) -> int:
    """Grant credits (subscription, top-up, adjustment), creating the account if needed."""
    if amount <= 0:
      raise ValueError("Credit grant amount must be positive.")
    if source_type not in CREDIT_SOURCE_TYPES or source_type in {"reservation", "refund"}:
      raise ValueError(f"Unsupported credit source type: {source_type}")

    if uow is not None:
      return await self._add_credits(uow, account_id, amount, source_type, description, tenant_id)

    async with self._uow_factory() as own_uow:
      return await self._add_credits(own_uow, account_id, amount, source_type, description, tenant_id)

  async def _add_credits(self, uow: UnitOfWork, account_id: str, amount: int, source_type: CreditSourceType, description: str | None, tenant_id: str | None) -> int:
    now = self._clock()
    await uow.credits.ensure_account(account_id, tenant_id=tenant_id, now=now)
    balance = await uow.credits.lock_balance(account_id) or 0
    new_balance = balance + amount
    await uow.credits.set_balance(account_id, new_balance, now=now)
    await uow.credits.append_entry(CreditEntry(account_id=account_id, delta=amount, balance_after=new_balance, source_type=source_type, created_at=now, description=description))
    logger.info("Added credits account_id=%s amount=%d source=%s balance=%d", account_id, amount, source_type, new_balance)
    return new_balance

  async def get_balance(self, account_id: str) -> int:
    async with self._uow_factory() as uow:
      balance = await uow.credits.get_balance(account_id)
    return balance or 0

  async def history(self, account_id: str, *, limit: int = 50) -> list[CreditEntry]:
    """Return the newest ledger entries for an account."""
    if limit <= 0 or limit > 200:
      raise ValueError("History limit must be between 1 and 200.")
    async with self._uow_factory() as uow:
      return await uow.credits.list_entries(account_id, limit=limit)
