"""Storage interfaces shared by the Postgres and in-memory backends."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from app.jobs.models import CreditEntry, EnhancementJobRecord, OutboxRecord, VariantRecord


class CreditsRepository(Protocol):
  """Credit accounts and their append-only ledger."""

  async def get_balance(self, account_id: str) -> int | None:
    """Return the balance without locking, or None when no account exists."""

  async def lock_balance(self, account_id: str) -> int | None:
    """Lock the account row for the rest of the unit of work and return its balance."""

  async def ensure_account(self, account_id: str, *, tenant_id: str | None, now: datetime) -> None:
    """Create an empty account if it does not exist yet."""

  async def set_balance(self, account_id: str, balance: int, *, now: datetime) -> None:
    """Overwrite the balance of a locked account."""

  async def append_entry(self, entry: CreditEntry) -> None:
    """Record one ledger entry."""

  async def list_entries(self, account_id: str, *, limit: int = 100) -> list[CreditEntry]:
    """Return the newest ledger entries first."""


class JobsRepository(Protocol):
  """Enhancement jobs and their output variants."""

  async def add(self, job: EnhancementJobRecord) -> None:
    """Insert a new job."""

  async def get(self, job_id: str, *, for_update: bool = False) -> EnhancementJobRecord | None:
    """Fetch a job, optionally locking it for the rest of the unit of work."""

  async def save(self, job: EnhancementJobRecord) -> None:
    """Persist all mutable fields of an existing job."""

  async def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> EnhancementJobRecord | None:
    """Return the job a user already submitted under this key."""

  async def list_for_user(self, user_id: str, *, limit: int, offset: int) -> list[EnhancementJobRecord]:
    """Return a user's jobs, newest first."""

  async def list_completed_for_photo(self, user_id: str, photo_id: str) -> list[EnhancementJobRecord]:
    """Return a user's completed jobs for one photo, newest first."""

  async def add_variants(self, variants: list[VariantRecord]) -> None:
    """Insert output variants for a job."""

  async def list_variants(self, job_id: str) -> list[VariantRecord]:
    """Return a job's variants ordered by rank."""


class OutboxRepository(Protocol):
  """Durable dispatch intents."""

  async def enqueue(self, job_id: str, payload: dict[str, Any], *, now: datetime) -> int:
    """Insert a pending dispatch row and return its id."""

  async def claim_next(self, *, now: datetime, lease_seconds: int, max_attempts: int) -> OutboxRecord | None:
    """Claim one due row, skipping rows locked by other workers."""

  async def list_abandoned(self, *, now: datetime, max_attempts: int) -> list[OutboxRecord]:
    """Lock processing rows whose lease expired after their final attempt."""

  async def mark_completed(self, outbox_id: int, *, now: datetime, note: str | None = None) -> None:
    """Close a row successfully."""

  async def schedule_retry(self, outbox_id: int, *, next_retry_at: datetime, error: str) -> None:
    """Return a row to pending after a failed attempt."""

  async def mark_failed(self, outbox_id: int, *, now: datetime, error: str) -> None:
    """Close a row after its final failed attempt."""

  async def cancel_pending_for_job(self, job_id: str, *, now: datetime) -> int:
    """Close a canceled job's pending rows; return how many were closed."""


class NonceRepository(Protocol):
  """Replay protection for signed callbacks."""

  async def remember(self, nonce: str, *, job_id: str, now: datetime) -> bool:
    """Record a nonce; return False when it was already used."""


class UnitOfWork(Protocol):
  """One storage transaction: commits on clean exit, rolls back on error."""

  credits: CreditsRepository
  jobs: JobsRepository
  outbox: OutboxRepository
  nonces: NonceRepository

  async def __aenter__(self) -> UnitOfWork: ...

  async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]
