"""Signed provider callbacks: verify, parse, and apply to the job."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.jobs.errors import EnhancementValidationError, JobNotFoundError, SignatureInvalidError
from app.jobs.lifecycle import JobLifecycle
from app.jobs.state import CancelRequest, JobOutcome, RenderFailure, RenderOutput, RenderProgress, RenderSuccess
from app.storage.repositories import UnitOfWorkFactory
from app.webhooks.signing import require_valid_signature

logger = logging.getLogger(__name__)

_SIGNATURE_HEADERS = ("x-signature", "x-n8n-signature")
_PROGRESS_STATUSES = frozenset({"rendering", "processing", "in_progress", "running", "started"})
_SUCCESS_STATUSES = frozenset({"completed", "complete", "succeeded", "success", "done"})
_FAILURE_STATUSES = frozenset({"failed", "failure", "error"})
_CANCEL_STATUSES = frozenset({"canceled", "cancelled"})

DEFAULT_PROVIDER_ERROR_CODE = "PROVIDER_ERROR"
MAX_STAGE_LENGTH = 64


def _utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass(frozen=True)
class CallbackResult:
  ok: bool
  ignored: bool
  status: str

  def to_dict(self) -> dict[str, Any]:
    return {"ok": self.ok, "ignored": self.ignored, "status": self.status}


def _optional_int(value: Any, field: str) -> int | None:
  if value is None:
    return None
  # bool is an int subclass but never a valid count here.
  if isinstance(value, bool):
    raise EnhancementValidationError(f"{field} must be a number", field=field)
  try:
    return int(value)
  except (TypeError, ValueError) as exc:
    raise EnhancementValidationError(f"{field} must be a number", field=field) from exc


def _optional_stage(value: Any) -> str | None:
  if value is None:
    return None
  if not isinstance(value, str):
    raise EnhancementValidationError("stage must be a string", field="stage")
  return value.strip()[:MAX_STAGE_LENGTH] or None


def extract_outputs(body: Mapping[str, Any]) -> tuple[RenderOutput, ...]:
  """Collect variant URLs from the shapes different workflows send."""
  ranked: list[tuple[int, int, str]] = []
  variants = body.get("variants")
  if isinstance(variants, list):
    for index, item in enumerate(variants):
      if isinstance(item, str) and item:
        ranked.append((index, index, item))
      elif isinstance(item, Mapping):
        url = item.get("url") or item.get("outputUrl") or item.get("output_url")
        rank = _optional_int(item.get("rank"), "rank")
        if url:
          ranked.append((index if rank is None else rank, index, str(url)))
    if ranked:
      # Reported ranks only order the outputs; stored ranks are always 0..n-1.
      ranked.sort()
      return tuple(RenderOutput(url=url, rank=position) for position, (_, _, url) in enumerate(ranked))

  urls = body.get("urls")
  if isinstance(urls, list):
    return tuple(RenderOutput(url=str(url), rank=index) for index, url in enumerate(urls) if url)

  result = body.get("result")
  nested_url = result.get("url") if isinstance(result, Mapping) else None
  for candidate in (body.get("outputUrl"), body.get("enhancedImageUrl"), body.get("imageUrl"), nested_url):
    if candidate:
      return (RenderOutput(url=str(candidate), rank=0),)
  return ()


def parse_outcome(body: Mapping[str, Any]) -> JobOutcome:
  """Translate a callback body into a job outcome."""
  status = str(body.get("status") or "").strip().lower()
  if status in _PROGRESS_STATUSES:
    return RenderProgress(progress=_optional_int(body.get("progress"), "progress"), stage=_optional_stage(body.get("stage")))
  if status in _SUCCESS_STATUSES:
    outputs = extract_outputs(body)
    if not outputs:
      raise EnhancementValidationError("Completed callback carries no output URLs", field="variants")
    return RenderSuccess(outputs=outputs, cost_micros=_optional_int(body.get("costMicros", body.get("cost_micros")), "costMicros"))
  if status in _FAILURE_STATUSES:
    message = body.get("errorMessage") or body.get("error") or "Rendering failed"
    if isinstance(message, Mapping):
      message = message.get("message") or "Rendering failed"
    code = body.get("errorCode") or DEFAULT_PROVIDER_ERROR_CODE
    return RenderFailure(code=str(code), message=str(message)[:2000])
  if status in _CANCEL_STATUSES:
    return CancelRequest(reason="canceled by provider")
  raise EnhancementValidationError(f"Unsupported callback status: {status or '<missing>'}", field="status")


class CallbackHandler:
  """Entry point for provider callbacks (HTTP endpoint and mock provider)."""

  def __init__(self, uow_factory: UnitOfWorkFactory, lifecycle: JobLifecycle, *, secret: str, clock: Callable[[], datetime] = _utc_now) -> None:
    self._uow_factory = uow_factory
    self._lifecycle = lifecycle
    self._secret = secret
    self._clock = clock

  async def handle_provider_callback(self, job_id: str, raw_body: bytes, headers: Mapping[str, str]) -> CallbackResult:
    normalized = {key.lower(): value for key, value in headers.items()}
    signature = next((normalized[name] for name in _SIGNATURE_HEADERS if normalized.get(name)), None)
    # Nothing is read or written before the signature checks out.
    require_valid_signature(raw_body, signature, normalized.get("x-timestamp"), self._secret, now=self._clock().timestamp())

    try:
      body = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
      raise EnhancementValidationError("Callback body is not valid JSON") from exc
    if not isinstance(body, dict):
      raise EnhancementValidationError("Callback body must be a JSON object")

    body_job_id = body.get("jobId") or body.get("job_id")
    if body_job_id is not None and str(body_job_id) != job_id:
      raise EnhancementValidationError("Callback jobId does not match the URL", field="jobId")

    outcome = parse_outcome(body)
    nonce = (normalized.get("x-nonce") or "").strip()

    async with self._uow_factory() as uow:
      if nonce and not await uow.nonces.remember(nonce, job_id=job_id, now=self._clock()):
        logger.warning("Rejected replayed callback job_id=%s nonce=%s", job_id, nonce)
        raise SignatureInvalidError("nonce already used")
      job = await uow.jobs.get(job_id, for_update=True)
      if job is None:
        raise JobNotFoundError(job_id)
      result = await self._lifecycle.apply_in_uow(uow, job, outcome)

    self._lifecycle.publish(result)
    if not result.applied:
      logger.info("Callback ignored job_id=%s status=%s outcome=%s", job_id, result.job.status, type(outcome).__name__)
    return CallbackResult(ok=True, ignored=not result.applied, status=result.job.status)
