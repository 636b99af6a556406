"""In-process fan-out of job progress events and SSE framing."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from app.jobs.models import EnhancementJobRecord, ProgressEvent

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"
_CLOSED = object()


def new_event_id() -> str:
  """Return a globally unique progress event id."""
  return f"evt_{uuid.uuid4().hex}"


def build_event(job: EnhancementJobRecord, *, variants: list[dict[str, Any]] | None = None, timestamp: datetime | None = None) -> ProgressEvent:
  """Snapshot a job into a progress event."""
  return ProgressEvent(
    id=new_event_id(),
    job_id=job.job_id,
    status=job.status,
    progress=job.progress_percent,
    timestamp=timestamp or datetime.now(UTC),
    stage=job.progress_stage,
    error=job.error_message,
    variants=list(variants or []),
  )


class Subscription:
  """A single listener on one job's progress stream."""

  def __init__(self, broadcaster: ProgressBroadcaster, job_id: str, max_queue_size: int) -> None:
    self.job_id = job_id
    self._broadcaster = broadcaster
    self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue_size)
    self._closed = False
    self.dropped = 0

  @property
  def closed(self) -> bool:
    return self._closed

  def _offer(self, event: ProgressEvent) -> bool:
    if self._closed:
      return False
    try:
      self._queue.put_nowait(event)
    except asyncio.QueueFull:
      self.dropped += 1
      return False
    return True

  async def get(self, timeout: float | None = None) -> ProgressEvent | None:
    """Wait for the next event; return None on timeout or once closed."""
    if self._closed and self._queue.empty():
      return None
    try:
      item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
    except TimeoutError:
      return None
    if item is _CLOSED:
      return None
    return item

  def close(self) -> None:
    """Detach from the broadcaster and wake any pending reader."""
    if self._closed:
      return
    self._closed = True
    self._broadcaster._unsubscribe(self)
    try:
      self._queue.put_nowait(_CLOSED)
    except asyncio.QueueFull:
      # A full queue still yields items; the reader stops on the closed flag after draining.
      pass

  def __aiter__(self) -> AsyncIterator[ProgressEvent]:
    return self

  async def __anext__(self) -> ProgressEvent:
    event = await self.get()
    if event is None:
      raise StopAsyncIteration
    return event

  async def __aenter__(self) -> Subscription:
    return self

  async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
    self.close()


class ProgressBroadcaster:
  """Best-effort, at-most-once delivery of progress events to live subscribers."""

  def __init__(self, *, max_queue_size: int = 100) -> None:
    self._max_queue_size = max_queue_size
    self._subscribers: dict[str, set[Subscription]] = {}

  def subscribe(self, job_id: str) -> Subscription:
    subscription = Subscription(self, job_id, self._max_queue_size)
    self._subscribers.setdefault(job_id, set()).add(subscription)
    return subscription

  def _unsubscribe(self, subscription: Subscription) -> None:
    listeners = self._subscribers.get(subscription.job_id)
    if not listeners:
      return
    listeners.discard(subscription)
    if not listeners:
      self._subscribers.pop(subscription.job_id, None)

  def subscriber_count(self, job_id: str) -> int:
    return len(self._subscribers.get(job_id, ()))

  def emit(self, job_id: str, event: ProgressEvent) -> int:
    """Push an event to every current subscriber; return how many received it."""
    delivered = 0
    # Copy so a subscriber closing mid-loop does not mutate the set being iterated.
    for subscription in list(self._subscribers.get(job_id, ())):
      if subscription._offer(event):
        delivered += 1
      else:
        logger.warning("Dropped progress event job_id=%s event_id=%s (subscriber queue full)", job_id, event.id)
    return delivered

  def close_all(self) -> None:
    for listeners in list(self._subscribers.values()):
      for subscription in list(listeners):
        subscription.close()


def format_sse(event: ProgressEvent) -> str:
  """Frame one event for a text/event-stream response."""
  data = json.dumps(event.to_payload(), separators=(",", ":"))
  return f"id: {event.id}\nevent: progress\ndata: {data}\n\n"


async def sse_stream(subscription: Subscription, *, initial: ProgressEvent | None = None, keepalive_seconds: float = 15.0) -> AsyncIterator[str]:
  """Yield SSE frames until a terminal event arrives or the subscription closes."""
  try:
    if initial is not None:
      yield format_sse(initial)
      if initial.is_terminal:
        return
    while not subscription.closed:
      event = await subscription.get(timeout=keepalive_seconds)
      if event is None:
        if subscription.closed:
          return
        yield KEEPALIVE_FRAME
        continue
      yield format_sse(event)
      if event.is_terminal:
        return
  finally:
    subscription.close()
