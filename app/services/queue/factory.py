from __future__ import annotations

from app.config import Settings
from app.jobs.outbox import OutboxDispatcher
from app.services.queue.cloud_tasks import CloudTasksQueueAdapter
from app.services.queue.inprocess import InProcessQueueAdapter
from app.services.queue.interface import QueueAdapter


def build_queue_adapter(settings: Settings, dispatcher: OutboxDispatcher) -> QueueAdapter:
  """Factory to get the configured queue adapter."""
  if settings.queue_backend == "cloud-tasks":
    return CloudTasksQueueAdapter(settings)
  return InProcessQueueAdapter(dispatcher, poll_interval_seconds=settings.outbox_poll_interval_seconds)
