"""Postgres-backed outbox with SKIP LOCKED claiming."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.jobs.models import OUTBOX_EVENT_ENQUEUE, OutboxRecord
from app.schema.enhancements import OutboxEvent
from app.storage.repositories import OutboxRepository


class PostgresOutboxRepository(OutboxRepository):
  """Outbox rows live in the same database as jobs so both commit together."""

  def __init__(self, session: AsyncSession) -> None:
    self._session = session

  async def enqueue(self, job_id: str, payload: dict[str, Any], *, now: datetime) -> int:
    row = OutboxEvent(job_id=job_id, event_type=OUTBOX_EVENT_ENQUEUE, payload=payload, status="pending", attempts=0, next_retry_at=now, created_at=now)
    self._session.add(row)
    await self._session.flush()
    return row.id

  async def claim_next(self, *, now: datetime, lease_seconds: int, max_attempts: int) -> OutboxRecord | None:
    # Rows another worker has locked are skipped instead of waited on.
    due = or_(
      and_(OutboxEvent.status == "pending", OutboxEvent.next_retry_at <= now),
      and_(OutboxEvent.status == "processing", OutboxEvent.locked_until < now, OutboxEvent.attempts < max_attempts),
    )
    stmt = select(OutboxEvent).where(due).order_by(OutboxEvent.next_retry_at, OutboxEvent.id).limit(1).with_for_update(skip_locked=True)
    result = await self._session.execute(stmt)
    row = result.scalar_one_or_none()
    if row is None:
      return None

    row.status = "processing"
    row.attempts = row.attempts + 1
    row.locked_until = now + timedelta(seconds=lease_seconds)
    await self._session.flush()
    return self._model_to_record(row)

  async def list_abandoned(self, *, now: datetime, max_attempts: int) -> list[OutboxRecord]:
    stmt = select(OutboxEvent).where(OutboxEvent.status == "processing", OutboxEvent.locked_until < now, OutboxEvent.attempts >= max_attempts).order_by(OutboxEvent.id).with_for_update(skip_locked=True)
    result = await self._session.execute(stmt)
    return [self._model_to_record(row) for row in result.scalars().all()]

  async def mark_completed(self, outbox_id: int, *, now: datetime, note: str | None = None) -> None:
    stmt = update(OutboxEvent).where(OutboxEvent.id == outbox_id).values(status="completed", processed_at=now, locked_until=None, last_error=note)
    await self._session.execute(stmt)

  async def schedule_retry(self, outbox_id: int, *, next_retry_at: datetime, error: str) -> None:
    stmt = update(OutboxEvent).where(OutboxEvent.id == outbox_id).values(status="pending", next_retry_at=next_retry_at, locked_until=None, last_error=error)
    await self._session.execute(stmt)

  async def mark_failed(self, outbox_id: int, *, now: datetime, error: str) -> None:
    stmt = update(OutboxEvent).where(OutboxEvent.id == outbox_id).values(status="failed", processed_at=now, locked_until=None, last_error=error)
    await self._session.execute(stmt)

  async def cancel_pending_for_job(self, job_id: str, *, now: datetime) -> int:
    stmt = update(OutboxEvent).where(OutboxEvent.job_id == job_id, OutboxEvent.status == "pending").values(status="completed", processed_at=now, last_error="job canceled").returning(OutboxEvent.id)
    result = await self._session.execute(stmt)
    return len(result.scalars().all())

  @staticmethod
  def _model_to_record(row: OutboxEvent) -> OutboxRecord:
    return OutboxRecord(
      id=row.id,
      job_id=row.job_id,
      event_type=row.event_type,
      payload=dict(row.payload or {}),
      status=row.status,  # type: ignore[arg-type]
      attempts=row.attempts,
      next_retry_at=row.next_retry_at,
      created_at=row.created_at,
      locked_until=row.locked_until,
      last_error=row.last_error,
      processed_at=row.processed_at,
    )
