"""Domain records for enhancement jobs, the outbox, and the credit ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["queued", "rendering", "completed", "failed", "canceled"]
OutboxStatus = Literal["pending", "processing", "completed", "failed"]
CreditSourceType = Literal["reservation", "refund", "subscription", "topup", "adjustment"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "canceled"})
CREDIT_SOURCE_TYPES: frozenset[str] = frozenset({"reservation", "refund", "subscription", "topup", "adjustment"})
OUTBOX_EVENT_ENQUEUE = "enqueue_enhancement"


def is_terminal(status: str) -> bool:
  """Return True when a job status can no longer change."""
  return status in TERMINAL_STATUSES


@dataclass
class EnhancementJobRecord:
  """A single enhancement request and its lifecycle state."""

  job_id: str
  tenant_id: str
  user_id: str
  status: JobStatus
  enhancement_type: str
  mode: str
  provider: str
  model: str
  reserved_credits: int
  request_json: dict[str, Any]
  created_at: datetime
  updated_at: datetime
  photo_id: str | None = None
  progress_stage: str | None = "queued"
  progress_percent: int = 0
  cost_micros: int | None = None
  error_message: str | None = None
  error_code: str | None = None
  idempotency_key: str | None = None
  completed_at: datetime | None = None
  canceled_at: datetime | None = None

  @property
  def is_terminal(self) -> bool:
    return is_terminal(self.status)


@dataclass
class VariantRecord:
  """One output image produced for a completed job."""

  job_id: str
  output_url: str
  rank: int
  id: int | None = None
  created_at: datetime | None = None


@dataclass
class OutboxRecord:
  """Durable intent to dispatch a job to the render provider."""

  id: int
  job_id: str
  event_type: str
  payload: dict[str, Any]
  status: OutboxStatus
  attempts: int
  next_retry_at: datetime
  created_at: datetime
  locked_until: datetime | None = None
  last_error: str | None = None
  processed_at: datetime | None = None


@dataclass
class CreditEntry:
  """Append-only ledger row mirroring one balance change."""

  account_id: str
  delta: int
  balance_after: int
  source_type: CreditSourceType
  created_at: datetime
  description: str | None = None
  job_id: str | None = None


@dataclass(frozen=True)
class ProgressEvent:
  """Point-in-time status update pushed to progress subscribers."""

  id: str
  job_id: str
  status: JobStatus
  progress: int
  timestamp: datetime
  stage: str | None = None
  error: str | None = None
  variants: list[dict[str, Any]] = field(default_factory=list)

  @property
  def is_terminal(self) -> bool:
    return is_terminal(self.status)

  def to_payload(self) -> dict[str, Any]:
    """Serialize for SSE clients."""
    payload: dict[str, Any] = {"id": self.id, "jobId": self.job_id, "status": self.status, "progress": self.progress, "timestamp": self.timestamp.isoformat()}
    if self.stage:
      payload["stage"] = self.stage
    if self.error:
      payload["error"] = self.error
    if self.variants:
      payload["variants"] = self.variants
    return payload
