"""Postgres-backed repository for enhancement jobs using SQLAlchemy."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.jobs.models import EnhancementJobRecord, VariantRecord
from app.schema.enhancements import EnhancementJob, EnhancementVariant
from app.storage.repositories import JobsRepository

_MUTABLE_FIELDS = (
  "status",
  "progress_stage",
  "progress_percent",
  "cost_micros",
  "error_message",
  "error_code",
  "updated_at",
  "completed_at",
  "canceled_at",
)


class PostgresJobsRepository(JobsRepository):
  """Persist jobs and variants inside the caller's session transaction."""

  def __init__(self, session: AsyncSession) -> None:
    self._session = session

  async def add(self, job: EnhancementJobRecord) -> None:
    row = EnhancementJob(
      job_id=job.job_id,
      tenant_id=job.tenant_id,
      user_id=job.user_id,
      photo_id=job.photo_id,
      status=job.status,
      progress_stage=job.progress_stage,
      progress_percent=job.progress_percent,
      reserved_credits=job.reserved_credits,
      cost_micros=job.cost_micros,
      enhancement_type=job.enhancement_type,
      mode=job.mode,
      provider=job.provider,
      model=job.model,
      request_json=job.request_json,
      error_message=job.error_message,
      error_code=job.error_code,
      idempotency_key=job.idempotency_key,
      created_at=job.created_at,
      updated_at=job.updated_at,
      completed_at=job.completed_at,
      canceled_at=job.canceled_at,
    )
    self._session.add(row)
    await self._session.flush()

  async def get(self, job_id: str, *, for_update: bool = False) -> EnhancementJobRecord | None:
    stmt = select(EnhancementJob).where(EnhancementJob.job_id == job_id)
    if for_update:
      stmt = stmt.with_for_update()
    result = await self._session.execute(stmt)
    row = result.scalar_one_or_none()
    if row is None:
      return None
    return self._model_to_record(row)

  async def save(self, job: EnhancementJobRecord) -> None:
    row = await self._session.get(EnhancementJob, job.job_id)
    if row is None:
      raise LookupError(f"Job {job.job_id} does not exist.")
    for name in _MUTABLE_FIELDS:
      setattr(row, name, getattr(job, name))
    await self._session.flush()

  async def find_by_idempotency_key(self, user_id: str, idempotency_key: str) -> EnhancementJobRecord | None:
    stmt = select(EnhancementJob).where(EnhancementJob.user_id == user_id, EnhancementJob.idempotency_key == idempotency_key)
    result = await self._session.execute(stmt)
    row = result.scalar_one_or_none()
    if row is None:
      return None
    return self._model_to_record(row)

  async def list_for_user(self, user_id: str, *, limit: int, offset: int) -> list[EnhancementJobRecord]:
    stmt = select(EnhancementJob).where(EnhancementJob.user_id == user_id).order_by(EnhancementJob.created_at.desc(), EnhancementJob.job_id).limit(limit).offset(offset)
    result = await self._session.execute(stmt)
    return [self._model_to_record(row) for row in result.scalars().all()]

  async def list_completed_for_photo(self, user_id: str, photo_id: str) -> list[EnhancementJobRecord]:
    stmt = (
      select(EnhancementJob)
      .where(EnhancementJob.user_id == user_id, EnhancementJob.photo_id == photo_id, EnhancementJob.status == "completed")
      .order_by(EnhancementJob.created_at.desc(), EnhancementJob.job_id)
    )
    result = await self._session.execute(stmt)
    return [self._model_to_record(row) for row in result.scalars().all()]

  async def add_variants(self, variants: list[VariantRecord]) -> None:
    for variant in variants:
      self._session.add(EnhancementVariant(job_id=variant.job_id, output_url=variant.output_url, rank=variant.rank))
    await self._session.flush()

  async def list_variants(self, job_id: str) -> list[VariantRecord]:
    stmt = select(EnhancementVariant).where(EnhancementVariant.job_id == job_id).order_by(EnhancementVariant.rank)
    result = await self._session.execute(stmt)
    return [VariantRecord(job_id=row.job_id, output_url=row.output_url, rank=row.rank, id=row.id, created_at=row.created_at) for row in result.scalars().all()]

  @staticmethod
  def _model_to_record(row: EnhancementJob) -> EnhancementJobRecord:
    return EnhancementJobRecord(
      job_id=row.job_id,
      tenant_id=row.tenant_id,
      user_id=row.user_id,
      status=row.status,  # type: ignore[arg-type]
      enhancement_type=row.enhancement_type,
      mode=row.mode,
      provider=row.provider,
      model=row.model,
      reserved_credits=row.reserved_credits,
      request_json=dict(row.request_json or {}),
      created_at=row.created_at,
      updated_at=row.updated_at,
      photo_id=row.photo_id,
      progress_stage=row.progress_stage,
      progress_percent=row.progress_percent,
      cost_micros=row.cost_micros,
      error_message=row.error_message,
      error_code=row.error_code,
      idempotency_key=row.idempotency_key,
      completed_at=row.completed_at,
      canceled_at=row.canceled_at,
    )
