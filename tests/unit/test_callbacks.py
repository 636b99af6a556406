"""Signed provider callbacks applied through the job lifecycle."""

from __future__ import annotations

import json

import pytest

from app.jobs.errors import EnhancementValidationError, JobNotFoundError, SignatureExpiredError, SignatureInvalidError
from app.jobs.state import CancelRequest, RenderFailure, RenderProgress, RenderSuccess
from app.services.callbacks import DEFAULT_PROVIDER_ERROR_CODE, extract_outputs, parse_outcome
from app.services.enhancements import SubmitEnhancementCommand
from app.webhooks.signing import sign


async def _submit(service, ledger) -> str:
  await ledger.add_credits("user-1", 50, "topup")
  command = SubmitEnhancementCommand(tenant_id="tenant-1", user_id="user-1", image_url="https://cdn.test/pool.jpg", enhancement_type="item_removal")
  return (await service.submit_enhancement_job(command)).job_id


def _signed(body: dict, secret: str, clock, *, nonce: str | None = None, age: int = 0, header: str = "X-Signature") -> tuple[bytes, dict[str, str]]:
  raw = json.dumps(body).encode("utf-8")
  signed = sign(raw, secret, timestamp=int(clock().timestamp()) - age)
  headers = {header: signed.signature, "X-Timestamp": str(signed.timestamp)}
  if nonce:
    headers["X-Nonce"] = nonce
  return raw, headers


def _completed(job_id: str) -> dict:
  return {"jobId": job_id, "status": "completed", "variants": [{"url": "https://cdn.test/out-1.jpg", "rank": 0}, {"url": "https://cdn.test/out-2.jpg", "rank": 1}], "costMicros": 125000}


def test_parse_outcome_maps_status_synonyms() -> None:
  assert isinstance(parse_outcome({"status": "processing", "progress": 30}), RenderProgress)
  assert isinstance(parse_outcome({"status": "succeeded", "outputUrl": "https://cdn.test/a.jpg"}), RenderSuccess)
  assert isinstance(parse_outcome({"status": "error"}), RenderFailure)
  assert isinstance(parse_outcome({"status": "cancelled"}), CancelRequest)


def test_parse_outcome_failure_defaults() -> None:
  outcome = parse_outcome({"status": "failed", "error": {"message": "GPU out of memory"}})
  assert outcome == RenderFailure(code=DEFAULT_PROVIDER_ERROR_CODE, message="GPU out of memory")


def test_parse_outcome_rejects_unknown_status() -> None:
  with pytest.raises(EnhancementValidationError):
    parse_outcome({"status": "teleported"})


def test_parse_outcome_requires_outputs_on_success() -> None:
  with pytest.raises(EnhancementValidationError):
    parse_outcome({"status": "completed"})


def test_parse_outcome_rejects_non_numeric_progress() -> None:
  with pytest.raises(EnhancementValidationError):
    parse_outcome({"status": "rendering", "progress": "half"})


@pytest.mark.parametrize(
  ("body", "urls"),
  [
    ({"variants": ["https://cdn.test/a.jpg", "https://cdn.test/b.jpg"]}, ["https://cdn.test/a.jpg", "https://cdn.test/b.jpg"]),
    ({"urls": ["https://cdn.test/a.jpg"]}, ["https://cdn.test/a.jpg"]),
    ({"enhancedImageUrl": "https://cdn.test/e.jpg"}, ["https://cdn.test/e.jpg"]),
    ({"result": {"url": "https://cdn.test/r.jpg"}}, ["https://cdn.test/r.jpg"]),
    ({}, []),
  ],
)
def test_extract_outputs_shapes(body: dict, urls: list[str]) -> None:
  assert [output.url for output in extract_outputs(body)] == urls


@pytest.mark.parametrize(
  "variants",
  [
    [{"url": "https://cdn.test/a.jpg", "rank": 1}, {"url": "https://cdn.test/b.jpg"}],
    [{"url": "https://cdn.test/a.jpg", "rank": 0}, {"url": "https://cdn.test/b.jpg", "rank": 0}],
  ],
)
def test_extract_outputs_renumbers_colliding_ranks(variants: list[dict]) -> None:
  outputs = extract_outputs({"variants": variants})
  assert [output.rank for output in outputs] == [0, 1]
  assert [output.url for output in outputs] == ["https://cdn.test/a.jpg", "https://cdn.test/b.jpg"]


def test_extract_outputs_orders_by_reported_rank() -> None:
  outputs = extract_outputs({"variants": [{"url": "https://cdn.test/second.jpg", "rank": 7}, {"url": "https://cdn.test/first.jpg", "rank": 3}]})
  assert [(output.url, output.rank) for output in outputs] == [("https://cdn.test/first.jpg", 0), ("https://cdn.test/second.jpg", 1)]


def test_parse_outcome_truncates_stage() -> None:
  outcome = parse_outcome({"status": "rendering", "stage": "  " + "x" * 100})
  assert outcome.stage == "x" * 64


@pytest.mark.parametrize("stage", [{"name": "upscale"}, 3, ["a"]])
def test_parse_outcome_rejects_non_string_stage(stage: object) -> None:
  with pytest.raises(EnhancementValidationError):
    parse_outcome({"status": "rendering", "stage": stage})


@pytest.mark.anyio
async def test_colliding_ranks_still_complete_the_job(service, ledger, callbacks, store, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  body = {"jobId": job_id, "status": "completed", "variants": [{"url": "https://cdn.test/a.jpg", "rank": 1}, {"url": "https://cdn.test/b.jpg"}]}
  raw, headers = _signed(body, settings.webhook_secret, clock)

  result = await callbacks.handle_provider_callback(job_id, raw, headers)

  assert result.status == "completed"
  assert sorted(variant.rank for variant in store.state.variants) == [0, 1]
  assert store.balance_of("user-1") == 40


@pytest.mark.anyio
async def test_rendering_then_completed(service, ledger, callbacks, store, settings, clock, broadcaster) -> None:
  job_id = await _submit(service, ledger)
  subscription = broadcaster.subscribe(job_id)

  raw, headers = _signed({"jobId": job_id, "status": "rendering", "progress": 40}, settings.webhook_secret, clock)
  result = await callbacks.handle_provider_callback(job_id, raw, headers)
  assert result.to_dict() == {"ok": True, "ignored": False, "status": "rendering"}
  assert store.state.jobs[job_id].progress_percent == 40

  raw, headers = _signed(_completed(job_id), settings.webhook_secret, clock)
  result = await callbacks.handle_provider_callback(job_id, raw, headers)
  assert result.status == "completed"

  job = store.state.jobs[job_id]
  assert job.progress_percent == 100
  assert job.cost_micros == 125000
  assert job.completed_at == clock.now
  assert [variant.output_url for variant in store.state.variants] == ["https://cdn.test/out-1.jpg", "https://cdn.test/out-2.jpg"]
  # Completion keeps the reservation as the charge.
  assert store.balance_of("user-1") == 40

  rendering = await subscription.get(timeout=1)
  completed = await subscription.get(timeout=1)
  assert (rendering.status, completed.status) == ("rendering", "completed")
  assert len(completed.variants) == 2


@pytest.mark.anyio
async def test_duplicate_completion_is_ignored(service, ledger, callbacks, store, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw, headers = _signed(_completed(job_id), settings.webhook_secret, clock)
  await callbacks.handle_provider_callback(job_id, raw, headers)

  raw, headers = _signed(_completed(job_id), settings.webhook_secret, clock)
  result = await callbacks.handle_provider_callback(job_id, raw, headers)

  assert result.ok is True
  assert result.ignored is True
  assert result.status == "completed"
  assert len(store.state.variants) == 2


@pytest.mark.anyio
async def test_failure_refunds_exactly_once(service, ledger, callbacks, store, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  body = {"jobId": job_id, "status": "failed", "errorMessage": "Render timed out", "errorCode": "RENDER_TIMEOUT"}

  for _ in range(3):
    raw, headers = _signed(body, settings.webhook_secret, clock)
    await callbacks.handle_provider_callback(job_id, raw, headers)

  job = store.state.jobs[job_id]
  assert job.status == "failed"
  assert job.error_code == "RENDER_TIMEOUT"
  assert store.balance_of("user-1") == 50
  assert [entry.source_type for entry in store.entries_for("user-1")].count("refund") == 1


@pytest.mark.anyio
async def test_completion_after_failure_is_ignored(service, ledger, callbacks, store, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw, headers = _signed({"jobId": job_id, "status": "failed"}, settings.webhook_secret, clock)
  await callbacks.handle_provider_callback(job_id, raw, headers)

  raw, headers = _signed(_completed(job_id), settings.webhook_secret, clock)
  result = await callbacks.handle_provider_callback(job_id, raw, headers)

  assert result.ignored is True
  assert store.state.jobs[job_id].status == "failed"
  assert store.state.variants == []


@pytest.mark.anyio
async def test_replayed_nonce_is_rejected(service, ledger, callbacks, store, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw, headers = _signed({"jobId": job_id, "status": "rendering", "progress": 20}, settings.webhook_secret, clock, nonce="nonce-1")
  await callbacks.handle_provider_callback(job_id, raw, headers)

  with pytest.raises(SignatureInvalidError):
    await callbacks.handle_provider_callback(job_id, raw, headers)
  assert store.state.jobs[job_id].progress_percent == 20


@pytest.mark.anyio
async def test_expired_signature_touches_nothing(service, ledger, callbacks, store, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw, headers = _signed(_completed(job_id), settings.webhook_secret, clock, nonce="nonce-1", age=121)

  with pytest.raises(SignatureExpiredError):
    await callbacks.handle_provider_callback(job_id, raw, headers)

  assert store.state.jobs[job_id].status == "queued"
  assert store.state.nonces == {}


@pytest.mark.anyio
async def test_signature_at_119_seconds_is_accepted(service, ledger, callbacks, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw, headers = _signed(_completed(job_id), settings.webhook_secret, clock, age=119)
  result = await callbacks.handle_provider_callback(job_id, raw, headers)
  assert result.status == "completed"


@pytest.mark.anyio
async def test_bad_signature_is_rejected(service, ledger, callbacks, store, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw, headers = _signed(_completed(job_id), "not-the-secret", clock)
  with pytest.raises(SignatureInvalidError):
    await callbacks.handle_provider_callback(job_id, raw, headers)
  assert store.state.jobs[job_id].status == "queued"


@pytest.mark.anyio
async def test_missing_signature_is_rejected(service, ledger, callbacks) -> None:
  job_id = await _submit(service, ledger)
  with pytest.raises(SignatureInvalidError):
    await callbacks.handle_provider_callback(job_id, json.dumps(_completed(job_id)).encode(), {})


@pytest.mark.anyio
async def test_workflow_signature_header_is_accepted(service, ledger, callbacks, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw, headers = _signed(_completed(job_id), settings.webhook_secret, clock, header="X-N8N-Signature")
  result = await callbacks.handle_provider_callback(job_id, raw, headers)
  assert result.status == "completed"


@pytest.mark.anyio
async def test_body_job_id_must_match_path(service, ledger, callbacks, store, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw, headers = _signed(_completed("job-other"), settings.webhook_secret, clock)
  with pytest.raises(EnhancementValidationError):
    await callbacks.handle_provider_callback(job_id, raw, headers)
  assert store.state.jobs[job_id].status == "queued"


@pytest.mark.anyio
async def test_unknown_job_is_not_found(callbacks, store, settings, clock) -> None:
  raw, headers = _signed(_completed("job-missing"), settings.webhook_secret, clock, nonce="nonce-9")
  with pytest.raises(JobNotFoundError):
    await callbacks.handle_provider_callback("job-missing", raw, headers)
  # The nonce write rolled back with the unit of work.
  assert store.state.nonces == {}


@pytest.mark.anyio
async def test_non_object_body_is_rejected(service, ledger, callbacks, settings, clock) -> None:
  job_id = await _submit(service, ledger)
  raw = b"[1, 2, 3]"
  signed = sign(raw, settings.webhook_secret, timestamp=int(clock().timestamp()))
  with pytest.raises(EnhancementValidationError):
    await callbacks.handle_provider_callback(job_id, raw, {"x-signature": signed.signature, "x-timestamp": str(signed.timestamp)})
