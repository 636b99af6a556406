"""Enhancement job submission, cancellation, and queries."""

from __future__ import annotations

import logging
import unicodedata
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urljoin, urlparse

from sqlalchemy.exc import IntegrityError

from app.jobs.errors import EnhancementValidationError, InsufficientCreditsError, JobNotCancelableError, JobNotFoundError, JobNotRetryableError
from app.jobs.lifecycle import JobLifecycle, TransitionResult
from app.jobs.models import EnhancementJobRecord, VariantRecord
from app.jobs.state import CancelRequest
from app.services.credits import CreditLedger, estimate_cost
from app.services.queue.interface import QueueAdapter
from app.storage.repositories import UnitOfWork, UnitOfWorkFactory
from app.utils.db_retry import execute_with_retry
from app.utils.ids import generate_job_id

logger = logging.getLogger(__name__)

MAX_MEGAPIXELS = 25
MAX_PROMPT_LENGTH = 500
MAX_BULK_JOBS = 100
DEFAULT_ENHANCEMENT_TYPE = "image_enhancement"
DEFAULT_OPTIONS_MODEL = "seedream"
DEFAULT_VARIANTS = 1

# Workflow names differ from the public enhancement type names.
_MODE_ALIASES = {"blend_materials": "blend_material"}


def _utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass(frozen=True)
class SubmitEnhancementCommand:
  tenant_id: str
  user_id: str
  image_url: str
  enhancement_type: str | None = None
  photo_id: str | None = None
  width: int | None = None
  height: int | None = None
  masks: list[dict[str, Any]] = field(default_factory=list)
  mode: str | None = None
  options: dict[str, Any] = field(default_factory=dict)
  calibration: float | None = None
  user_prompt: str | None = None
  idempotency_key: str | None = None


@dataclass(frozen=True)
class SubmissionResult:
  job_id: str
  credits_reserved: int
  status: str
  new_balance: int
  duplicate: bool = False


@dataclass(frozen=True)
class JobStatusView:
  job: EnhancementJobRecord
  variants: list[VariantRecord]


@dataclass(frozen=True)
class BulkCancelResult:
  canceled: list[str]
  skipped: dict[str, str]


@dataclass(frozen=True)
class BulkRetryResult:
  retried: dict[str, str]
  skipped: dict[str, str]


@dataclass(frozen=True)
class PhotoVariantView:
  variant: VariantRecord
  job: EnhancementJobRecord


def sanitize_prompt(raw: str | None) -> str | None:
  """Strip control characters (keeping newlines) and surrounding whitespace."""
  if raw is None:
    return None
  cleaned = "".join(char for char in raw if char == "\n" or unicodedata.category(char) != "Cc").strip()
  return cleaned or None


def resolve_image_url(raw: str, base_url: str) -> str:
  """Make relative image URLs absolute and reject non-HTTP schemes."""
  candidate = raw.strip()
  parsed = urlparse(candidate)
  if not parsed.scheme:
    candidate = urljoin(f"{base_url.rstrip('/')}/", candidate.lstrip("/"))
    parsed = urlparse(candidate)
  if parsed.scheme not in {"http", "https"} or not parsed.netloc:
    raise EnhancementValidationError("imageUrl must be an http(s) URL or a path on this service", field="imageUrl")
  return candidate


def map_mode(mode: str) -> str:
  return _MODE_ALIASES.get(mode, mode)


class EnhancementService:
  """Application service behind the enhancement endpoints."""

  def __init__(
    self,
    uow_factory: UnitOfWorkFactory,
    ledger: CreditLedger,
    lifecycle: JobLifecycle,
    queue: QueueAdapter,
    *,
    base_url: str,
    provider_name: str,
    model: str,
    clock: Callable[[], datetime] = _utc_now,
  ) -> None:
    self._uow_factory = uow_factory
    self._ledger = ledger
    self._lifecycle = lifecycle
    self._queue = queue
    self._base_url = base_url.rstrip("/")
    self._provider_name = provider_name
    self._model = model
    self._clock = clock

  def callback_url(self, job_id: str) -> str:
    return f"{self._base_url}/v1/enhancements/{job_id}/callback"

  def _validate(self, command: SubmitEnhancementCommand) -> dict[str, Any]:
    """Return the normalized submission or raise without touching storage."""
    if not (command.tenant_id or "").strip():
      raise EnhancementValidationError("tenantId is required", field="tenantId")
    if not (command.user_id or "").strip():
      raise EnhancementValidationError("userId is required", field="userId")
    if not (command.image_url or "").strip():
      raise EnhancementValidationError("imageUrl is required", field="imageUrl")

    enhancement_type = (command.enhancement_type or DEFAULT_ENHANCEMENT_TYPE).strip().lower()
    if not enhancement_type:
      raise EnhancementValidationError("enhancementType must not be empty", field="enhancementType")

    width, height = command.width, command.height
    if (width is None) != (height is None):
      raise EnhancementValidationError("width and height must be provided together", field="width")
    if width is not None and height is not None:
      if width <= 0 or height <= 0:
        raise EnhancementValidationError("width and height must be positive", field="width")
      if width * height > MAX_MEGAPIXELS * 1_000_000:
        raise EnhancementValidationError(f"Image exceeds {MAX_MEGAPIXELS} megapixels", field="width")
      if width == height:
        raise EnhancementValidationError("Square images are not supported", field="width")

    if command.calibration is not None and command.calibration <= 0:
      raise EnhancementValidationError("calibration must be positive", field="calibration")

    prompt = sanitize_prompt(command.user_prompt)
    if prompt is not None and len(prompt) > MAX_PROMPT_LENGTH:
      raise EnhancementValidationError(f"userPrompt must be at most {MAX_PROMPT_LENGTH} characters", field="userPrompt")

    masks = [dict(mask) for mask in command.masks or []]
    mode = map_mode((command.mode or enhancement_type).strip().lower())
    # Routing mode travels at the top level only.
    options = {key: value for key, value in (command.options or {}).items() if key != "mode"}
    options.setdefault("model", DEFAULT_OPTIONS_MODEL)
    options.setdefault("variants", DEFAULT_VARIANTS)
    if prompt:
      options["prompt"] = prompt

    return {
      "tenantId": command.tenant_id.strip(),
      "userId": command.user_id.strip(),
      "photoId": command.photo_id,
      "imageUrl": resolve_image_url(command.image_url, self._base_url),
      "enhancementType": enhancement_type,
      "masks": masks,
      "mode": mode,
      "options": options,
      "calibration": command.calibration,
      "width": width,
      "height": height,
    }

  def _dispatch_payload(self, job_id: str, normalized: dict[str, Any]) -> dict[str, Any]:
    return {
      "jobId": job_id,
      "tenantId": normalized["tenantId"],
      "userId": normalized["userId"],
      "photoId": normalized["photoId"],
      "imageUrl": normalized["imageUrl"],
      "masks": normalized["masks"],
      "mode": normalized["mode"],
      "options": normalized["options"],
      "calibration": normalized["calibration"],
      "width": normalized["width"],
      "height": normalized["height"],
      "callbackUrl": self.callback_url(job_id),
      "provider": self._provider_name,
      "model": self._model,
    }

  async def _create_job(self, uow: UnitOfWork, normalized: dict[str, Any], cost: int, *, idempotency_key: str | None = None) -> SubmissionResult:
    """Reserve credits, insert a queued job, and enqueue its dispatch in the caller's unit of work."""
    job_id = generate_job_id()
    now = self._clock()
    user_id = normalized["userId"]
    reservation = await self._ledger.reserve(user_id, cost, uow=uow, job_id=job_id)
    if not reservation.reserved:
      raise InsufficientCreditsError(required=cost, available=reservation.new_balance)

    job = EnhancementJobRecord(
      job_id=job_id,
      tenant_id=normalized["tenantId"],
      user_id=user_id,
      status="queued",
      enhancement_type=normalized["enhancementType"],
      mode=normalized["mode"],
      provider=self._provider_name,
      model=self._model,
      reserved_credits=cost,
      request_json=normalized,
      created_at=now,
      updated_at=now,
      photo_id=normalized["photoId"],
      idempotency_key=idempotency_key,
    )
    await uow.jobs.add(job)
    await uow.outbox.enqueue(job_id, self._dispatch_payload(job_id, normalized), now=now)
    return SubmissionResult(job_id=job_id, credits_reserved=cost, status="queued", new_balance=reservation.new_balance)

  async def submit_enhancement_job(self, command: SubmitEnhancementCommand) -> SubmissionResult:
    """Reserve credits, create the job, and record the dispatch intent atomically."""
    normalized = self._validate(command)
    cost = estimate_cost(normalized["enhancementType"], bool(normalized["masks"]))
    user_id = normalized["userId"]
    idempotency_key = (command.idempotency_key or "").strip() or None

    async def _submit_once() -> SubmissionResult:
      async with self._uow_factory() as uow:
        if idempotency_key:
          existing = await uow.jobs.find_by_idempotency_key(user_id, idempotency_key)
          if existing is not None:
            balance = await uow.credits.get_balance(user_id) or 0
            return SubmissionResult(job_id=existing.job_id, credits_reserved=existing.reserved_credits, status=existing.status, new_balance=balance, duplicate=True)
        return await self._create_job(uow, normalized, cost, idempotency_key=idempotency_key)

    try:
      result = await execute_with_retry(operation_name="enhancement_submission", func=_submit_once)
    except IntegrityError:
      # A concurrent submission with the same idempotency key won the insert.
      if not idempotency_key:
        raise
      result = await self._existing_submission(user_id, idempotency_key)

    if result.duplicate:
      logger.info("Returning existing job_id=%s for idempotency_key=%s", result.job_id, idempotency_key)
      return result

    logger.info("Submitted enhancement job_id=%s user_id=%s type=%s credits=%d", result.job_id, user_id, normalized["enhancementType"], cost)
    await self._queue.notify(result.job_id)
    return result

  async def _existing_submission(self, user_id: str, idempotency_key: str) -> SubmissionResult:
    async with self._uow_factory() as uow:
      existing = await uow.jobs.find_by_idempotency_key(user_id, idempotency_key)
      balance = await uow.credits.get_balance(user_id) or 0
    if existing is None:
      raise EnhancementValidationError("Idempotency key conflict", field="idempotencyKey")
    return SubmissionResult(job_id=existing.job_id, credits_reserved=existing.reserved_credits, status=existing.status, new_balance=balance, duplicate=True)

  async def cancel_job(self, job_id: str, user_id: str) -> EnhancementJobRecord:
    """Cancel a caller's active job and refund its reservation."""
    result: TransitionResult
    async with self._uow_factory() as uow:
      job = await uow.jobs.get(job_id, for_update=True)
      if job is None or job.user_id != user_id:
        raise JobNotFoundError(job_id)
      if job.is_terminal:
        raise JobNotCancelableError(job_id=job_id, status=job.status)
      result = await self._lifecycle.apply_in_uow(uow, job, CancelRequest(reason="canceled by user"))
    self._lifecycle.publish(result)
    logger.info("Canceled job_id=%s user_id=%s refunded=%d", job_id, user_id, result.refunded)
    return result.job

  async def bulk_cancel(self, job_ids: list[str], user_id: str) -> BulkCancelResult:
    """Cancel several jobs, each in its own transaction."""
    if len(job_ids) > MAX_BULK_JOBS:
      raise EnhancementValidationError(f"At most {MAX_BULK_JOBS} jobs can be canceled at once", field="jobIds")
    canceled: list[str] = []
    skipped: dict[str, str] = {}
    for job_id in dict.fromkeys(job_ids):
      try:
        await self.cancel_job(job_id, user_id)
      except JobNotFoundError:
        skipped[job_id] = "not_found"
      except JobNotCancelableError as exc:
        skipped[job_id] = exc.status
      else:
        canceled.append(job_id)
    return BulkCancelResult(canceled=canceled, skipped=skipped)

  async def get_job_status(self, job_id: str, user_id: str) -> JobStatusView:
    async with self._uow_factory() as uow:
      job = await uow.jobs.get(job_id)
      if job is None or job.user_id != user_id:
        raise JobNotFoundError(job_id)
      variants = await uow.jobs.list_variants(job_id)
    return JobStatusView(job=job, variants=variants)

  async def list_jobs(self, user_id: str, *, limit: int = 20, offset: int = 0) -> list[EnhancementJobRecord]:
    if limit <= 0 or limit > 100:
      raise EnhancementValidationError("limit must be between 1 and 100", field="limit")
    if offset < 0:
      raise EnhancementValidationError("offset must not be negative", field="offset")
    async with self._uow_factory() as uow:
      return await uow.jobs.list_for_user(user_id, limit=limit, offset=offset)

  async def retry_job(self, job_id: str, user_id: str) -> SubmissionResult:
    """Resubmit a failed job as a new job with the same request and a fresh reservation."""

    async def _retry_once() -> SubmissionResult:
      async with self._uow_factory() as uow:
        original = await uow.jobs.get(job_id)
        if original is None or original.user_id != user_id:
          raise JobNotFoundError(job_id)
        if original.status != "failed":
          raise JobNotRetryableError(job_id=job_id, status=original.status)
        normalized = {**original.request_json, "retryOf": job_id}
        cost = estimate_cost(original.enhancement_type, bool(normalized.get("masks")))
        return await self._create_job(uow, normalized, cost)

    result = await execute_with_retry(operation_name="enhancement_retry", func=_retry_once)
    logger.info("Retried failed job_id=%s as job_id=%s user_id=%s credits=%d", job_id, result.job_id, user_id, result.credits_reserved)
    await self._queue.notify(result.job_id)
    return result

  async def bulk_retry(self, job_ids: list[str], user_id: str) -> BulkRetryResult:
    """Resubmit several failed jobs, each in its own transaction."""
    if len(job_ids) > MAX_BULK_JOBS:
      raise EnhancementValidationError(f"At most {MAX_BULK_JOBS} jobs can be retried at once", field="jobIds")
    retried: dict[str, str] = {}
    skipped: dict[str, str] = {}
    for job_id in dict.fromkeys(job_ids):
      try:
        result = await self.retry_job(job_id, user_id)
      except JobNotFoundError:
        skipped[job_id] = "not_found"
      except JobNotRetryableError as exc:
        skipped[job_id] = exc.status
      except InsufficientCreditsError:
        skipped[job_id] = "insufficient_credits"
      else:
        retried[job_id] = result.job_id
    return BulkRetryResult(retried=retried, skipped=skipped)

  async def list_photo_variants(self, photo_id: str, user_id: str) -> list[PhotoVariantView]:
    """Return every variant produced for a photo, newest job first."""
    views: list[PhotoVariantView] = []
    async with self._uow_factory() as uow:
      jobs = await uow.jobs.list_completed_for_photo(user_id, photo_id)
      for job in jobs:
        for variant in await uow.jobs.list_variants(job.job_id):
          views.append(PhotoVariantView(variant=variant, job=job))
    return views
