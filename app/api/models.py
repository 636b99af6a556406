from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator

from app.jobs.models import CreditEntry, EnhancementJobRecord, JobStatus, VariantRecord


class MaskModel(BaseModel):
  """A drawn region the provider should edit."""

  model_config = ConfigDict(extra="allow")

  type: StrictStr | None = None
  points: list[Any] = Field(default_factory=list)
  material_id: StrictStr | None = Field(default=None, alias="materialId")


class SubmitEnhancementRequest(BaseModel):
  """Request body for enhancement submission."""

  model_config = ConfigDict(populate_by_name=True)

  image_url: StrictStr = Field(alias="imageUrl", min_length=1, max_length=4096)
  enhancement_type: StrictStr | None = Field(default=None, alias="enhancementType", max_length=64)
  photo_id: StrictStr | None = Field(default=None, alias="photoId", max_length=128)
  width: int | None = None
  height: int | None = None
  masks: list[MaskModel] = Field(default_factory=list, max_length=50)
  mode: StrictStr | None = Field(default=None, max_length=64)
  options: dict[str, Any] = Field(default_factory=dict)
  calibration: float | None = None
  user_prompt: str | None = Field(default=None, alias="userPrompt")
  idempotency_key: StrictStr | None = Field(default=None, alias="idempotencyKey", max_length=128)

  @field_validator("enhancement_type", "mode")
  @classmethod
  def _normalize_name(cls, value: str | None) -> str | None:
    if value is None:
      return None
    return value.strip().lower() or None


class SubmitEnhancementResponse(BaseModel):
  model_config = ConfigDict(populate_by_name=True)

  job_id: str = Field(serialization_alias="jobId")
  credits_reserved: int = Field(serialization_alias="creditsReserved")
  status: JobStatus
  new_balance: int = Field(serialization_alias="newBalance")
  duplicate: bool = False


class VariantResponse(BaseModel):
  url: str
  rank: int

  @classmethod
  def from_record(cls, record: VariantRecord) -> VariantResponse:
    return cls(url=record.output_url, rank=record.rank)


class JobResponse(BaseModel):
  """Public view of an enhancement job."""

  job_id: str = Field(serialization_alias="jobId")
  status: JobStatus
  enhancement_type: str = Field(serialization_alias="enhancementType")
  progress_stage: str | None = Field(default=None, serialization_alias="progressStage")
  progress_percent: int = Field(serialization_alias="progressPercent")
  credits_reserved: int = Field(serialization_alias="creditsReserved")
  photo_id: str | None = Field(default=None, serialization_alias="photoId")
  error_code: str | None = Field(default=None, serialization_alias="errorCode")
  error_message: str | None = Field(default=None, serialization_alias="errorMessage")
  created_at: datetime = Field(serialization_alias="createdAt")
  updated_at: datetime = Field(serialization_alias="updatedAt")
  completed_at: datetime | None = Field(default=None, serialization_alias="completedAt")
  canceled_at: datetime | None = Field(default=None, serialization_alias="canceledAt")
  variants: list[VariantResponse] = Field(default_factory=list)

  @classmethod
  def from_record(cls, job: EnhancementJobRecord, variants: list[VariantRecord] | None = None) -> JobResponse:
    return cls(
      job_id=job.job_id,
      status=job.status,
      enhancement_type=job.enhancement_type,
      progress_stage=job.progress_stage,
      progress_percent=job.progress_percent,
      credits_reserved=job.reserved_credits,
      photo_id=job.photo_id,
      error_code=job.error_code,
      error_message=job.error_message,
      created_at=job.created_at,
      updated_at=job.updated_at,
      completed_at=job.completed_at,
      canceled_at=job.canceled_at,
      variants=[VariantResponse.from_record(variant) for variant in variants or []],
    )


class JobListResponse(BaseModel):
  jobs: list[JobResponse]
  limit: int
  offset: int


class BulkJobsRequest(BaseModel):
  """Job ids for a bulk cancel or retry."""

  model_config = ConfigDict(populate_by_name=True)

  job_ids: list[StrictStr] = Field(alias="jobIds", min_length=1, max_length=100)


class BulkCancelResponse(BaseModel):
  canceled: list[str]
  skipped: dict[str, str]


class BulkRetryResponse(BaseModel):
  """Maps each retried job id to the id of the job that replaced it."""

  retried: dict[str, str]
  skipped: dict[str, str]


class PhotoVariantResponse(BaseModel):
  url: str
  rank: int
  job_id: str = Field(serialization_alias="jobId")
  mode: str
  created_at: datetime | None = Field(default=None, serialization_alias="createdAt")
  job_created_at: datetime = Field(serialization_alias="jobCreatedAt")


class PhotoVariantsResponse(BaseModel):
  model_config = ConfigDict(populate_by_name=True)

  photo_id: str = Field(serialization_alias="photoId")
  variants: list[PhotoVariantResponse]


class CallbackResponse(BaseModel):
  ok: bool
  ignored: bool
  status: JobStatus


class BalanceResponse(BaseModel):
  balance: int


class CreditEntryResponse(BaseModel):
  delta: int
  balance_after: int = Field(serialization_alias="balanceAfter")
  source_type: str = Field(serialization_alias="sourceType")
  description: str | None = None
  job_id: str | None = Field(default=None, serialization_alias="jobId")
  created_at: datetime = Field(serialization_alias="createdAt")

  @classmethod
  def from_entry(cls, entry: CreditEntry) -> CreditEntryResponse:
    return cls(delta=entry.delta, balance_after=entry.balance_after, source_type=entry.source_type, description=entry.description, job_id=entry.job_id, created_at=entry.created_at)


class CreditHistoryResponse(BaseModel):
  balance: int
  entries: list[CreditEntryResponse]


class CostEstimateResponse(BaseModel):
  model_config = ConfigDict(populate_by_name=True)

  enhancement_type: str = Field(serialization_alias="enhancementType")
  has_mask: bool = Field(serialization_alias="hasMask")
  credits: int


class GrantCreditsRequest(BaseModel):
  model_config = ConfigDict(populate_by_name=True)

  account_id: StrictStr = Field(alias="accountId", min_length=1)
  tenant_id: StrictStr | None = Field(default=None, alias="tenantId")
  amount: int = Field(gt=0, le=1_000_000)
  source_type: Literal["subscription", "topup", "adjustment"] = Field(alias="sourceType")
  description: str | None = Field(default=None, max_length=500)


class GrantCreditsResponse(BaseModel):
  account_id: str = Field(serialization_alias="accountId")
  balance: int


class DrainRequest(BaseModel):
  job_id: str | None = None


class DrainResponse(BaseModel):
  processed: int
  outcomes: dict[str, str]
