"""Process-local storage backend implementing the repository protocols.

Used for local development and tests. A single asyncio lock serializes
units of work, which gives the same isolation the Postgres row locks
provide. Every unit of work snapshots the store on entry and restores
the snapshot when it exits with an error. Units of work must not be
nested within one task.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from app.jobs.models import OUTBOX_EVENT_ENQUEUE, CreditEntry, EnhancementJobRecord, OutboxRecord, VariantRecord


@dataclass
class _Account:
  account_id: str
  tenant_id: str | None
  credits_balance: int
  updated_at: datetime


@dataclass
class _StoreState:
  accounts: dict[str, _Account] = field(default_factory=dict)
  entries: list[CreditEntry] = field(default_factory=list)
  jobs: dict[str, EnhancementJobRecord] = field(default_factory=dict)
  variants: list[VariantRecord] = field(default_factory=list)
  outbox: dict[int, OutboxRecord] = field(default_factory=dict)
  nonces: dict[str, str] = field(default_factory=dict)
  next_outbox_id: int = 1
  next_variant_id: int = 1


class InMemoryStore:
  """Shared state behind every in-memory unit of work."""

  def __init__(self) -> None:
    self.state = _StoreState()
    self.lock = asyncio.Lock()

  def unit_of_work(self) -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork(self)

  def balance_of(self, account_id: str) -> int:
    account = self.state.accounts.get(account_id)
    return account.credits_balance if account else 0

  def entries_for(self, account_id: str) -> list[CreditEntry]:
    return [copy.copy(entry) for entry in self.state.entries if entry.account_id == account_id]

  def outbox_rows(self) -> list[OutboxRecord]:
    return [copy.deepcopy(row) for row in self.state.outbox.values()]


class InMemoryCreditsRepository:
  def __init__(self, state: _StoreState) -> None:
    self._state = state

  async def get_balance(self, account_id: str) -> int | None:
    account = self._state.accounts.get(account_id)
    return account.credits_balance if account else None

  async def lock_balance(self, account_id: str) -> int | None:
    return await self.get_balance(account_id)

  async def ensure_account(self, account_id: str, *, tenant_id: str | None, now: datetime) -> None:
    if account_id not in self._state.accounts:
      self._state.accounts[account_id] = _Account(account_id=account_id, tenant_id=tenant_id, credits_balance=0, updated_at=now)

  async def set_balance(self, account_id: str, balance: int, *, now: datetime) -> None:
    if balance < 0:
      raise ValueError("Credit balance cannot go negative.")
    account = self._state.accounts[account_id]
    account.credits_balance = balance
    account.updated_at = now

  async def append_entry(self, entry: CreditEntry) -> None:
    self._state.entries.append(copy.copy(entry))

  async def list_entries(self, account_id: str, *, limit: int = 100) -> list[CreditEntry]:
    matching = [copy.copy(entry) for entry in self._state.entries if entry.account_id == account_id]
    return list(reversed(matching))[:limit]


class InMemoryJobsRepository:
  def __init__(self, state: _StoreState) -> None:
    self._state = state

  async def add(self, job: EnhancementJobRecord) -> None:
    if job.job_id in self._state.jobs:
      raise ValueError(f"Job {job.job_id} already exists.")
    if job.idempotency_key and await self.find_by_idempotency_key(job.user_id, job.idempotency_key):
      raise ValueError(f"Idempotency key {job.idempotency_key} already used.")
    self._state.jobs[job.job_id] = copy.deepcopy(job)

  async def get(self, job_id: str, *, for_update: bool = False) -> EnhancementJobRecord | None:
    job = self._state.jobs.get(job_id)
    return copy.deepcopy(job) if job else None

  async def save(self, job: EnhancementJobRecord) -> None:
    if job.job_id not in self._state.jobs:
      raise LookupError(f"Job {job.job_id} does not exist.")
    self._state.jobs[job.job_id] = copy.deepcopy(job)

  async def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> EnhancementJobRecord | None:
    for job in self._state.jobs.values():
      if job.user_id == user_id and job.idempotency_key == idempotency_key:
        return copy.deepcopy(job)
    return None

  async def list_for_user(self, user_id: str, *, limit: int, offset: int) -> list[EnhancementJobRecord]:
    jobs = [job for job in self._state.jobs.values() if job.user_id == user_id]
    jobs.sort(key=lambda job: (job.created_at, job.job_id), reverse=True)
    return [copy.deepcopy(job) for job in jobs[offset : offset + limit]]

  async def list_completed_for_photo(self, user_id: str, photo_id: str) -> list[EnhancementJobRecord]:
    jobs = [job for job in self._state.jobs.values() if job.user_id == user_id and job.photo_id == photo_id and job.status == "completed"]
    jobs.sort(key=lambda job: (job.created_at, job.job_id), reverse=True)
    return [copy.deepcopy(job) for job in jobs]

  async def add_variants(self, variants: list[VariantRecord]) -> None:
    # Mirrors the (job_id, rank) unique constraint of the variants table.
    taken = {(variant.job_id, variant.rank) for variant in self._state.variants}
    for variant in variants:
      if (variant.job_id, variant.rank) in taken:
        raise ValueError(f"Duplicate variant rank {variant.rank} for job {variant.job_id}")
      taken.add((variant.job_id, variant.rank))
    for variant in variants:
      stored = replace(variant, id=self._state.next_variant_id)
      self._state.next_variant_id += 1
      self._state.variants.append(stored)

  async def list_variants(self, job_id: str) -> list[VariantRecord]:
    matching = [copy.copy(variant) for variant in self._state.variants if variant.job_id == job_id]
    return sorted(matching, key=lambda variant: variant.rank)


class InMemoryOutboxRepository:
  def __init__(self, state: _StoreState) -> None:
    self._state = state

  async def enqueue(self, job_id: str, payload: dict[str, Any], *, now: datetime) -> int:
    outbox_id = self._state.next_outbox_id
    self._state.next_outbox_id += 1
    self._state.outbox[outbox_id] = OutboxRecord(id=outbox_id, job_id=job_id, event_type=OUTBOX_EVENT_ENQUEUE, payload=copy.deepcopy(payload), status="pending", attempts=0, next_retry_at=now, created_at=now)
    return outbox_id

  async def claim_next(self, *, now: datetime, lease_seconds: int, max_attempts: int) -> OutboxRecord | None:
    candidates = [row for row in self._state.outbox.values() if _is_claimable(row, now, max_attempts)]
    if not candidates:
      return None
    row = min(candidates, key=lambda item: (item.next_retry_at, item.id))
    row.status = "processing"
    row.attempts += 1
    row.locked_until = now + timedelta(seconds=lease_seconds)
    return copy.deepcopy(row)

  async def list_abandoned(self, *, now: datetime, max_attempts: int) -> list[OutboxRecord]:
    rows = [row for row in self._state.outbox.values() if row.status == "processing" and row.locked_until is not None and row.locked_until < now and row.attempts >= max_attempts]
    return [copy.deepcopy(row) for row in sorted(rows, key=lambda item: item.id)]

  async def mark_completed(self, outbox_id: int, *, now: datetime, note: str | None = None) -> None:
    row = self._state.outbox[outbox_id]
    row.status = "completed"
    row.processed_at = now
    row.locked_until = None
    row.last_error = note

  async def schedule_retry(self, outbox_id: int, *, next_retry_at: datetime, error: str) -> None:
    row = self._state.outbox[outbox_id]
    row.status = "pending"
    row.next_retry_at = next_retry_at
    row.locked_until = None
    row.last_error = error

  async def mark_failed(self, outbox_id: int, *, now: datetime, error: str) -> None:
    row = self._state.outbox[outbox_id]
    row.status = "failed"
    row.processed_at = now
    row.locked_until = None
    row.last_error = error

  async def cancel_pending_for_job(self, job_id: str, *, now: datetime) -> int:
    closed = 0
    for row in self._state.outbox.values():
      if row.job_id == job_id and row.status == "pending":
        row.status = "completed"
        row.processed_at = now
        row.last_error = "job canceled"
        closed += 1
    return closed


def _is_claimable(row: OutboxRecord, now: datetime, max_attempts: int) -> bool:
  if row.status == "pending":
    return row.next_retry_at <= now
  if row.status == "processing":
    return row.locked_until is not None and row.locked_until < now and row.attempts < max_attempts
  return False


class InMemoryNonceRepository:
  def __init__(self, state: _StoreState) -> None:
    self._state = state

  async def remember(self, nonce: str, *, job_id: str, now: datetime) -> bool:
    if nonce in self._state.nonces:
      return False
    self._state.nonces[nonce] = job_id
    return True


class InMemoryUnitOfWork:
  """Serialized transaction over an InMemoryStore."""

  def __init__(self, store: InMemoryStore) -> None:
    self._store = store
    self._snapshot: _StoreState | None = None

  async def __aenter__(self) -> InMemoryUnitOfWork:
    await self._store.lock.acquire()
    self._snapshot = copy.deepcopy(self._store.state)
    state = self._store.state
    self.credits = InMemoryCreditsRepository(state)
    self.jobs = InMemoryJobsRepository(state)
    self.outbox = InMemoryOutboxRepository(state)
    self.nonces = InMemoryNonceRepository(state)
    return self

  async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
    try:
      if exc_type is not None and self._snapshot is not None:
        self._store.state = self._snapshot
    finally:
      self._snapshot = None
      self._store.lock.release()
