"""Enhancement job state machine.

Outcomes reported by providers, users, and the outbox are modelled as a
closed set of request types. ``transition_path`` decides which status
changes an outcome produces for a job in a given status, or raises
``DuplicateCallbackError`` when the request must be ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from app.jobs.errors import DuplicateCallbackError
from app.jobs.models import JobStatus, is_terminal

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
  "queued": frozenset({"rendering", "failed", "canceled"}),
  "rendering": frozenset({"rendering", "completed", "failed", "canceled"}),
  "completed": frozenset(),
  "failed": frozenset(),
  "canceled": frozenset(),
}

DEFAULT_RENDERING_PROGRESS = 50


@dataclass(frozen=True)
class RenderOutput:
  """One variant URL reported by the provider."""

  url: str
  rank: int


@dataclass(frozen=True)
class RenderProgress:
  """Provider reports the job is rendering."""

  progress: int | None = None
  stage: str | None = None


@dataclass(frozen=True)
class RenderSuccess:
  """Provider finished and returned outputs."""

  outputs: tuple[RenderOutput, ...] = field(default_factory=tuple)
  cost_micros: int | None = None


@dataclass(frozen=True)
class RenderFailure:
  """Rendering failed; reserved credits go back to the account."""

  code: str
  message: str


@dataclass(frozen=True)
class CancelRequest:
  """The job should stop; reserved credits go back to the account."""

  reason: str = "canceled"


JobOutcome = RenderProgress | RenderSuccess | RenderFailure | CancelRequest


def target_status(outcome: JobOutcome) -> JobStatus:
  """Map an outcome onto the status it drives the job towards."""
  if isinstance(outcome, RenderProgress):
    return "rendering"
  if isinstance(outcome, RenderSuccess):
    return "completed"
  if isinstance(outcome, RenderFailure):
    return "failed"
  if isinstance(outcome, CancelRequest):
    return "canceled"
  raise TypeError(f"Unsupported job outcome: {type(outcome).__name__}")


def can_transition(current: str, target: str) -> bool:
  """Return True when the single step current -> target is allowed."""
  return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition_path(job_id: str, current: str, outcome: JobOutcome) -> tuple[JobStatus, ...]:
  """Return the ordered statuses a job passes through to apply an outcome."""
  target = target_status(outcome)
  if is_terminal(current):
    raise DuplicateCallbackError(job_id=job_id, current_status=current, requested=target)

  if can_transition(current, target):
    return (target,)

  # A queued job that finishes without a progress report still passes rendering.
  if current == "queued" and target == "completed":
    return ("rendering", "completed")

  raise DuplicateCallbackError(job_id=job_id, current_status=current, requested=target)


def next_progress(current_percent: int, reported: int | None, status: str) -> int:
  """Return the new progress percent, never moving backwards."""
  if status == "completed":
    return 100
  if reported is None:
    reported = DEFAULT_RENDERING_PROGRESS if status == "rendering" else current_percent
  clamped = max(0, min(100, int(reported)))
  return max(current_percent, clamped)
