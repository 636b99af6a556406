"""Postgres-backed credit accounts and ledger entries."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.jobs.models import CreditEntry
from app.schema.enhancements import CreditAccount, CreditTransaction
from app.storage.repositories import CreditsRepository


class PostgresCreditsRepository(CreditsRepository):
  """Operate on credit rows inside the caller's session transaction."""

  def __init__(self, session: AsyncSession) -> None:
    self._session = session

  async def get_balance(self, account_id: str) -> int | None:
    stmt = select(CreditAccount.credits_balance).where(CreditAccount.account_id == account_id)
    result = await self._session.execute(stmt)
    return result.scalar_one_or_none()

  async def lock_balance(self, account_id: str) -> int | None:
    # Row lock serializes concurrent reservations against the same account.
    stmt = select(CreditAccount.credits_balance).where(CreditAccount.account_id == account_id).with_for_update()
    result = await self._session.execute(stmt)
    return result.scalar_one_or_none()

  async def ensure_account(self, account_id: str, *, tenant_id: str | None, now: datetime) -> None:
    stmt = pg_insert(CreditAccount).values(account_id=account_id, tenant_id=tenant_id, credits_balance=0, updated_at=now).on_conflict_do_nothing(index_elements=[CreditAccount.account_id])
    await self._session.execute(stmt)

  async def set_balance(self, account_id: str, balance: int, *, now: datetime) -> None:
    if balance < 0:
      raise ValueError("Credit balance cannot go negative.")
    stmt = update(CreditAccount).where(CreditAccount.account_id == account_id).values(credits_balance=balance, updated_at=now)
    await self._session.execute(stmt)

  async def append_entry(self, entry: CreditEntry) -> None:
    self._session.add(
      CreditTransaction(
        account_id=entry.account_id,
        delta=entry.delta,
        balance_after=entry.balance_after,
        source_type=entry.source_type,
        description=entry.description,
        job_id=entry.job_id,
        created_at=entry.created_at,
      )
    )
    await self._session.flush()

  async def list_entries(self, account_id: str, *, limit: int = 100) -> list[CreditEntry]:
    stmt = select(CreditTransaction).where(CreditTransaction.account_id == account_id).order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).limit(limit)
    result = await self._session.execute(stmt)
    return [
      CreditEntry(account_id=row.account_id, delta=row.delta, balance_after=row.balance_after, source_type=row.source_type, created_at=row.created_at, description=row.description, job_id=row.job_id)  # type: ignore[arg-type]
      for row in result.scalars().all()
    ]
