from __future__ import annotations

from typing import Protocol


class QueueAdapter(Protocol):
  """Triggers outbox draining after new work is committed."""

  async def start(self) -> None:
    """Begin background processing, if the adapter has any."""
    ...

  async def stop(self) -> None:
    """Stop background processing and release resources."""
    ...

  async def notify(self, job_id: str) -> None:
    """Signal that an outbox row for the job is ready; never raises."""
    ...
