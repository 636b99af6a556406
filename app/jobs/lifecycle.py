"""Apply job outcomes: status changes, their side effects, and progress events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from app.jobs.errors import DuplicateCallbackError, JobNotFoundError
from app.jobs.models import EnhancementJobRecord, ProgressEvent, VariantRecord
from app.jobs.progress import ProgressBroadcaster, build_event
from app.jobs.state import CancelRequest, JobOutcome, RenderFailure, RenderProgress, RenderSuccess, next_progress, transition_path
from app.services.credits import CreditLedger
from app.storage.repositories import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass(frozen=True)
class TransitionResult:
  """What happened when an outcome was applied to a job."""

  applied: bool
  job: EnhancementJobRecord
  event: ProgressEvent | None = None
  refunded: int = 0


class JobLifecycle:
  """The only place job status changes are written."""

  def __init__(self, uow_factory: UnitOfWorkFactory, ledger: CreditLedger, broadcaster: ProgressBroadcaster, *, clock: Callable[[], datetime] = _utc_now) -> None:
    self._uow_factory = uow_factory
    self._ledger = ledger
    self._broadcaster = broadcaster
    self._clock = clock

  async def apply(self, job_id: str, outcome: JobOutcome) -> TransitionResult:
    """Apply an outcome in its own unit of work and emit the event after commit."""
    async with self._uow_factory() as uow:
      job = await uow.jobs.get(job_id, for_update=True)
      if job is None:
        raise JobNotFoundError(job_id)
      result = await self.apply_in_uow(uow, job, outcome)
    self.publish(result)
    return result

  def publish(self, result: TransitionResult) -> None:
    """Emit the progress event of a committed transition."""
    if result.event is not None:
      self._broadcaster.emit(result.job.job_id, result.event)

  async def apply_in_uow(self, uow: UnitOfWork, job: EnhancementJobRecord, outcome: JobOutcome) -> TransitionResult:
    """Apply an outcome to a job locked by the caller's unit of work.

    Disallowed transitions are logged and reported as ``applied=False``;
    they never raise. The returned event must be published only after the
    unit of work commits.
    """
    try:
      path = transition_path(job.job_id, job.status, outcome)
    except DuplicateCallbackError as exc:
      logger.info("Ignoring transition job_id=%s current=%s requested=%s", exc.job_id, exc.current_status, exc.requested)
      return TransitionResult(applied=False, job=job)

    now = self._clock()
    previous = job.status
    refunded = 0
    variants: list[VariantRecord] = []

    if isinstance(outcome, RenderProgress):
      job.status = "rendering"
      job.progress_stage = outcome.stage or "rendering"
      job.progress_percent = next_progress(job.progress_percent, outcome.progress, "rendering")
    elif isinstance(outcome, RenderSuccess):
      job.status = "completed"
      job.progress_stage = "completed"
      job.progress_percent = next_progress(job.progress_percent, None, "completed")
      job.cost_micros = outcome.cost_micros
      job.completed_at = now
      variants = [VariantRecord(job_id=job.job_id, output_url=output.url, rank=output.rank) for output in outcome.outputs]
      if variants:
        await uow.jobs.add_variants(variants)
    elif isinstance(outcome, RenderFailure):
      job.status = "failed"
      job.progress_stage = "failed"
      job.error_code = outcome.code
      job.error_message = outcome.message
      refunded = await self._refund(uow, job, reason=f"Refund for failed job ({outcome.code})")
    elif isinstance(outcome, CancelRequest):
      job.status = "canceled"
      job.progress_stage = "canceled"
      job.canceled_at = now
      refunded = await self._refund(uow, job, reason=f"Refund for canceled job ({outcome.reason})")
      closed = await uow.outbox.cancel_pending_for_job(job.job_id, now=now)
      if closed:
        logger.info("Closed %d pending outbox rows for canceled job_id=%s", closed, job.job_id)
    else:
      raise TypeError(f"Unsupported job outcome: {type(outcome).__name__}")

    job.updated_at = now
    await uow.jobs.save(job)
    logger.info("Job transition job_id=%s %s -> %s (via %s) progress=%d", job.job_id, previous, job.status, "->".join(path), job.progress_percent)

    event_variants = [{"url": variant.output_url, "rank": variant.rank} for variant in variants]
    event = build_event(job, variants=event_variants, timestamp=now)
    return TransitionResult(applied=True, job=job, event=event, refunded=refunded)

  async def _refund(self, uow: UnitOfWork, job: EnhancementJobRecord, *, reason: str) -> int:
    if job.reserved_credits <= 0:
      return 0
    await self._ledger.refund(job.user_id, job.reserved_credits, uow=uow, job_id=job.job_id, reason=reason)
    return job.reserved_credits
