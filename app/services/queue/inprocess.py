from __future__ import annotations

import asyncio
import contextlib
import logging

from app.jobs.outbox import OutboxDispatcher
from app.services.queue.interface import QueueAdapter

logger = logging.getLogger(__name__)


class InProcessQueueAdapter(QueueAdapter):
  """Polls the outbox from an asyncio task; notify() wakes it early."""

  def __init__(self, dispatcher: OutboxDispatcher, *, poll_interval_seconds: float = 5.0) -> None:
    self._dispatcher = dispatcher
    self._poll_interval = poll_interval_seconds
    self._wakeup = asyncio.Event()
    self._task: asyncio.Task[None] | None = None
    self._stopping = False

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  async def start(self) -> None:
    if self.running:
      return
    self._stopping = False
    self._task = asyncio.create_task(self._run(), name="outbox-poller")
    logger.info("In-process outbox poller started (interval=%.1fs)", self._poll_interval)

  async def stop(self) -> None:
    self._stopping = True
    self._wakeup.set()
    task = self._task
    self._task = None
    if task is None:
      return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
      await task
    logger.info("In-process outbox poller stopped")

  async def notify(self, job_id: str) -> None:
    logger.debug("Outbox wakeup requested for job_id=%s", job_id)
    self._wakeup.set()

  async def _run(self) -> None:
    while not self._stopping:
      try:
        await self._dispatcher.drain()
      except Exception:  # noqa: BLE001
        # Keep polling; the rows stay durable and are retried next cycle.
        logger.error("Outbox drain failed", exc_info=True)
      with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
      self._wakeup.clear()
