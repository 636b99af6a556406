"""Outbox dispatch loop.

Each pass claims one due outbox row, hands its payload to the render
provider outside any transaction, and records the result. Failed
attempts back off exponentially; the final failure fails the job and
refunds its credits through the lifecycle.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

from app.config import Settings
from app.jobs.lifecycle import JobLifecycle, TransitionResult
from app.jobs.models import OutboxRecord
from app.jobs.state import RenderFailure
from app.services.providers.interface import RenderProvider
from app.storage.repositories import UnitOfWork, UnitOfWorkFactory

logger = logging.getLogger(__name__)

OUTBOX_FAILED_CODE = "OUTBOX_FAILED"
DispatchOutcome = Literal["idle", "dispatched", "skipped", "retry_scheduled", "failed"]


def _utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass(frozen=True)
class OutboxPolicy:
  max_attempts: int = 3
  backoff_base_ms: int = 5000
  backoff_max_ms: int = 30000
  jitter_ms: int = 1000
  lease_seconds: int = 120
  batch_size: int = 10

  @classmethod
  def from_settings(cls, settings: Settings) -> OutboxPolicy:
    return cls(
      max_attempts=settings.outbox_max_attempts,
      backoff_base_ms=settings.outbox_backoff_base_ms,
      backoff_max_ms=settings.outbox_backoff_max_ms,
      lease_seconds=settings.outbox_lease_seconds,
      batch_size=settings.outbox_batch_size,
    )


@dataclass(frozen=True)
class DispatchReport:
  outcome: DispatchOutcome
  outbox_id: int | None = None
  job_id: str | None = None
  attempts: int = 0
  error: str | None = None


def compute_backoff_ms(attempts: int, policy: OutboxPolicy, *, rng: Callable[[], float] = random.random) -> float:
  """Return the retry delay after the given number of attempts, capped."""
  delay = policy.backoff_base_ms * (2**attempts) + rng() * policy.jitter_ms
  return min(delay, policy.backoff_max_ms)


class OutboxDispatcher:
  """Drains the outbox into the render provider."""

  def __init__(
    self,
    uow_factory: UnitOfWorkFactory,
    provider: RenderProvider,
    lifecycle: JobLifecycle,
    *,
    policy: OutboxPolicy | None = None,
    clock: Callable[[], datetime] = _utc_now,
    rng: Callable[[], float] = random.random,
  ) -> None:
    self._uow_factory = uow_factory
    self._provider = provider
    self._lifecycle = lifecycle
    self.policy = policy or OutboxPolicy()
    self._clock = clock
    self._rng = rng

  async def drain(self, limit: int | None = None) -> list[DispatchReport]:
    """Process up to ``limit`` rows (the batch size by default) until none are due."""
    reports: list[DispatchReport] = []
    budget = limit if limit is not None else self.policy.batch_size
    while len(reports) < budget:
      report = await self.run_once()
      if report.outcome == "idle":
        break
      reports.append(report)
    if reports:
      logger.info("Outbox drain processed %d rows: %s", len(reports), ", ".join(f"{r.outbox_id}:{r.outcome}" for r in reports))
    return reports

  async def run_once(self) -> DispatchReport:
    """Fail abandoned rows, then claim and dispatch at most one row."""
    await self.fail_abandoned()

    now = self._clock()
    async with self._uow_factory() as uow:
      row = await uow.outbox.claim_next(now=now, lease_seconds=self.policy.lease_seconds, max_attempts=self.policy.max_attempts)
      if row is None:
        return DispatchReport(outcome="idle")
      job = await uow.jobs.get(row.job_id)
      # Canceled (or otherwise finished) jobs are never sent to the provider.
      if job is None or job.is_terminal:
        note = "job missing" if job is None else f"job already {job.status}"
        await uow.outbox.mark_completed(row.id, now=now, note=note)
        logger.info("Skipped outbox_id=%s job_id=%s: %s", row.id, row.job_id, note)
        return DispatchReport(outcome="skipped", outbox_id=row.id, job_id=row.job_id, attempts=row.attempts)

    logger.info("Dispatching outbox_id=%s job_id=%s attempt=%d/%d", row.id, row.job_id, row.attempts, self.policy.max_attempts)
    try:
      await self._provider.dispatch(row.payload)
    except Exception as exc:  # noqa: BLE001
      return await self._record_failure(row, exc)

    async with self._uow_factory() as uow:
      await uow.outbox.mark_completed(row.id, now=self._clock())
    return DispatchReport(outcome="dispatched", outbox_id=row.id, job_id=row.job_id, attempts=row.attempts)

  async def _record_failure(self, row: OutboxRecord, exc: Exception) -> DispatchReport:
    error = f"{type(exc).__name__}: {exc}"
    now = self._clock()
    if row.attempts < self.policy.max_attempts:
      delay_ms = compute_backoff_ms(row.attempts, self.policy, rng=self._rng)
      async with self._uow_factory() as uow:
        await uow.outbox.schedule_retry(row.id, next_retry_at=now + timedelta(milliseconds=delay_ms), error=error)
      logger.warning("Dispatch failed outbox_id=%s job_id=%s attempt=%d/%d; retrying in %.0fms: %s", row.id, row.job_id, row.attempts, self.policy.max_attempts, delay_ms, error)
      return DispatchReport(outcome="retry_scheduled", outbox_id=row.id, job_id=row.job_id, attempts=row.attempts, error=error)

    logger.error("Dispatch failed permanently outbox_id=%s job_id=%s after %d attempts: %s", row.id, row.job_id, row.attempts, error)
    result: TransitionResult | None = None
    async with self._uow_factory() as uow:
      await uow.outbox.mark_failed(row.id, now=now, error=error)
      result = await self._fail_job(uow, row.job_id)
    if result is not None:
      self._lifecycle.publish(result)
    return DispatchReport(outcome="failed", outbox_id=row.id, job_id=row.job_id, attempts=row.attempts, error=error)

  async def fail_abandoned(self) -> int:
    """Fail rows whose worker vanished after the final attempt."""
    now = self._clock()
    results: list[TransitionResult] = []
    async with self._uow_factory() as uow:
      rows = await uow.outbox.list_abandoned(now=now, max_attempts=self.policy.max_attempts)
      for row in rows:
        await uow.outbox.mark_failed(row.id, now=now, error="lease expired after final attempt")
        result = await self._fail_job(uow, row.job_id)
        if result is not None:
          results.append(result)
    for row in rows:
      logger.error("Abandoned outbox_id=%s job_id=%s failed after %d attempts", row.id, row.job_id, row.attempts)
    for result in results:
      self._lifecycle.publish(result)
    return len(rows)

  async def _fail_job(self, uow: UnitOfWork, job_id: str) -> TransitionResult | None:
    job = await uow.jobs.get(job_id, for_update=True)
    if job is None:
      return None
    failure = RenderFailure(code=OUTBOX_FAILED_CODE, message=f"Outbox processing failed after {self.policy.max_attempts} attempts")
    return await self._lifecycle.apply_in_uow(uow, job, failure)
