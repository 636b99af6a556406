from __future__ import annotations

import pytest

from app.jobs.errors import JobNotFoundError
from app.jobs.state import CancelRequest, RenderFailure, RenderOutput, RenderProgress, RenderSuccess
from app.services.enhancements import SubmitEnhancementCommand


async def _queued_job(service, ledger) -> str:
  await ledger.add_credits("user-1", 20, "topup")
  command = SubmitEnhancementCommand(tenant_id="tenant-1", user_id="user-1", image_url="https://cdn.test/pool.jpg", enhancement_type="day_to_dusk")
  return (await service.submit_enhancement_job(command)).job_id


@pytest.mark.anyio
async def test_apply_unknown_job(lifecycle) -> None:
  with pytest.raises(JobNotFoundError):
    await lifecycle.apply("job-missing", RenderProgress())


@pytest.mark.anyio
async def test_success_from_queued_persists_variants(service, ledger, lifecycle, store, broadcaster) -> None:
  job_id = await _queued_job(service, ledger)
  subscription = broadcaster.subscribe(job_id)
  outcome = RenderSuccess(outputs=(RenderOutput(url="https://cdn.test/dusk.jpg", rank=0),), cost_micros=900)

  result = await lifecycle.apply(job_id, outcome)

  assert result.applied is True
  assert result.job.status == "completed"
  assert result.job.progress_percent == 100
  assert store.state.jobs[job_id].cost_micros == 900
  assert [variant.rank for variant in store.state.variants] == [0]
  event = await subscription.get(timeout=1)
  assert event.variants == [{"url": "https://cdn.test/dusk.jpg", "rank": 0}]


@pytest.mark.anyio
async def test_progress_is_monotonic(service, ledger, lifecycle, store) -> None:
  job_id = await _queued_job(service, ledger)
  await lifecycle.apply(job_id, RenderProgress(progress=70, stage="upscaling"))
  result = await lifecycle.apply(job_id, RenderProgress(progress=30))
  assert result.applied is True
  assert store.state.jobs[job_id].progress_percent == 70
  assert store.state.jobs[job_id].progress_stage == "rendering"


@pytest.mark.anyio
async def test_failure_refunds_reservation(service, ledger, lifecycle, store) -> None:
  job_id = await _queued_job(service, ledger)
  assert store.balance_of("user-1") == 14

  result = await lifecycle.apply(job_id, RenderFailure(code="PROVIDER_ERROR", message="bad input"))

  assert result.refunded == 6
  assert store.balance_of("user-1") == 20
  refund = store.entries_for("user-1")[-1]
  assert refund.source_type == "refund"
  assert refund.job_id == job_id


@pytest.mark.anyio
async def test_ignored_transition_emits_nothing(service, ledger, lifecycle, broadcaster) -> None:
  job_id = await _queued_job(service, ledger)
  await lifecycle.apply(job_id, CancelRequest(reason="user"))
  subscription = broadcaster.subscribe(job_id)

  result = await lifecycle.apply(job_id, RenderFailure(code="PROVIDER_ERROR", message="late"))

  assert result.applied is False
  assert result.event is None
  assert result.refunded == 0
  assert await subscription.get(timeout=0.01) is None


@pytest.mark.anyio
async def test_rejected_outcome_type_rolls_back(service, ledger, lifecycle, store) -> None:
  job_id = await _queued_job(service, ledger)
  store.state.jobs[job_id].status = "rendering"
  with pytest.raises(TypeError):
    await lifecycle.apply(job_id, "completed")  # type: ignore[arg-type]
  assert store.state.jobs[job_id].status == "rendering"
