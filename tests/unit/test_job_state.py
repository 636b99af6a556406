from __future__ import annotations

import pytest

from app.jobs.errors import DuplicateCallbackError
from app.jobs.state import CancelRequest, RenderFailure, RenderOutput, RenderProgress, RenderSuccess, can_transition, next_progress, target_status, transition_path

OUTCOMES = [RenderProgress(progress=10), RenderSuccess(outputs=(RenderOutput(url="https://cdn.test/a.jpg", rank=0),)), RenderFailure(code="PROVIDER_ERROR", message="boom"), CancelRequest()]


def test_queued_job_starts_rendering() -> None:
  assert transition_path("job-1", "queued", RenderProgress(progress=20)) == ("rendering",)


def test_queued_job_completes_through_rendering() -> None:
  assert transition_path("job-1", "queued", RenderSuccess()) == ("rendering", "completed")


@pytest.mark.parametrize("outcome", [RenderProgress(), RenderSuccess(), RenderFailure(code="X", message="y"), CancelRequest()])
def test_rendering_job_accepts_every_outcome(outcome) -> None:
  assert transition_path("job-1", "rendering", outcome)[-1] == target_status(outcome)


@pytest.mark.parametrize("status", ["completed", "failed", "canceled"])
@pytest.mark.parametrize("outcome", OUTCOMES)
def test_terminal_jobs_ignore_everything(status: str, outcome) -> None:
  with pytest.raises(DuplicateCallbackError) as exc_info:
    transition_path("job-1", status, outcome)
  assert exc_info.value.current_status == status
  assert exc_info.value.requested == target_status(outcome)


def test_single_step_table() -> None:
  assert can_transition("queued", "rendering")
  assert can_transition("queued", "canceled")
  assert not can_transition("queued", "completed")
  assert not can_transition("completed", "failed")
  assert not can_transition("unknown", "rendering")


def test_target_status_rejects_foreign_types() -> None:
  with pytest.raises(TypeError):
    target_status(object())  # type: ignore[arg-type]


@pytest.mark.parametrize(
  ("current", "reported", "status", "expected"),
  [
    (0, None, "rendering", 50),
    (10, 40, "rendering", 40),
    (60, 30, "rendering", 60),
    (10, 150, "rendering", 100),
    (0, -5, "rendering", 0),
    (70, None, "rendering", 70),
    (35, None, "completed", 100),
    (35, None, "failed", 35),
  ],
)
def test_progress_never_moves_backwards(current: int, reported: int | None, status: str, expected: int) -> None:
  assert next_progress(current, reported, status) == expected
