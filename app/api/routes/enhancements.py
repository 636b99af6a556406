from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from app.api.deps import get_runtime
from app.api.models import (
  BulkCancelResponse,
  BulkJobsRequest,
  BulkRetryResponse,
  CallbackResponse,
  JobListResponse,
  JobResponse,
  PhotoVariantResponse,
  PhotoVariantsResponse,
  SubmitEnhancementRequest,
  SubmitEnhancementResponse,
)
from app.core.security import Principal, get_current_principal
from app.jobs.progress import build_event, sse_stream
from app.services.enhancements import SubmitEnhancementCommand
from app.services.runtime import EnhancementRuntime

router = APIRouter()
logger = logging.getLogger(__name__)

RuntimeDep = Annotated[EnhancementRuntime, Depends(get_runtime)]
PrincipalDep = Annotated[Principal, Depends(get_current_principal)]


@router.post("", response_model=SubmitEnhancementResponse, status_code=status.HTTP_201_CREATED)
async def submit_enhancement(request: SubmitEnhancementRequest, runtime: RuntimeDep, principal: PrincipalDep) -> SubmitEnhancementResponse:
  """Reserve credits and queue an enhancement job."""
  command = SubmitEnhancementCommand(
    tenant_id=principal.tenant_id,
    user_id=principal.user_id,
    image_url=request.image_url,
    enhancement_type=request.enhancement_type,
    photo_id=request.photo_id,
    width=request.width,
    height=request.height,
    masks=[mask.model_dump(by_alias=True, exclude_none=True) for mask in request.masks],
    mode=request.mode,
    options=request.options,
    calibration=request.calibration,
    user_prompt=request.user_prompt,
    idempotency_key=request.idempotency_key,
  )
  result = await runtime.enhancements.submit_enhancement_job(command)
  return SubmitEnhancementResponse(job_id=result.job_id, credits_reserved=result.credits_reserved, status=result.status, new_balance=result.new_balance, duplicate=result.duplicate)


@router.get("", response_model=JobListResponse)
async def list_enhancements(runtime: RuntimeDep, principal: PrincipalDep, limit: Annotated[int, Query(ge=1, le=100)] = 20, offset: Annotated[int, Query(ge=0)] = 0) -> JobListResponse:
  jobs = await runtime.enhancements.list_jobs(principal.user_id, limit=limit, offset=offset)
  return JobListResponse(jobs=[JobResponse.from_record(job) for job in jobs], limit=limit, offset=offset)


@router.post("/bulk-cancel", response_model=BulkCancelResponse)
async def bulk_cancel_enhancements(request: BulkJobsRequest, runtime: RuntimeDep, principal: PrincipalDep) -> BulkCancelResponse:
  result = await runtime.enhancements.bulk_cancel(request.job_ids, principal.user_id)
  return BulkCancelResponse(canceled=result.canceled, skipped=result.skipped)


@router.post("/bulk-retry", response_model=BulkRetryResponse)
async def bulk_retry_enhancements(request: BulkJobsRequest, runtime: RuntimeDep, principal: PrincipalDep) -> BulkRetryResponse:
  """Resubmit failed jobs as new jobs, reserving credits again."""
  result = await runtime.enhancements.bulk_retry(request.job_ids, principal.user_id)
  return BulkRetryResponse(retried=result.retried, skipped=result.skipped)


@router.get("/photo/{photo_id}/variants", response_model=PhotoVariantsResponse)
async def list_photo_variants(photo_id: str, runtime: RuntimeDep, principal: PrincipalDep) -> PhotoVariantsResponse:
  views = await runtime.enhancements.list_photo_variants(photo_id, principal.user_id)
  variants = [
    PhotoVariantResponse(url=view.variant.output_url, rank=view.variant.rank, job_id=view.job.job_id, mode=view.job.mode, created_at=view.variant.created_at, job_created_at=view.job.created_at)
    for view in views
  ]
  return PhotoVariantsResponse(photo_id=photo_id, variants=variants)


@router.get("/{job_id}", response_model=JobResponse)
async def get_enhancement(job_id: str, runtime: RuntimeDep, principal: PrincipalDep) -> JobResponse:
  view = await runtime.enhancements.get_job_status(job_id, principal.user_id)
  return JobResponse.from_record(view.job, view.variants)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_enhancement(job_id: str, runtime: RuntimeDep, principal: PrincipalDep) -> JobResponse:
  job = await runtime.enhancements.cancel_job(job_id, principal.user_id)
  return JobResponse.from_record(job)


@router.get("/{job_id}/stream")
async def stream_enhancement(job_id: str, runtime: RuntimeDep, principal: PrincipalDep) -> StreamingResponse:
  """Server-sent progress events until the job finishes."""
  # Subscribe before reading the snapshot so no transition falls in between.
  subscription = runtime.broadcaster.subscribe(job_id)
  try:
    view = await runtime.enhancements.get_job_status(job_id, principal.user_id)
  except Exception:
    subscription.close()
    raise

  variants = [{"url": variant.output_url, "rank": variant.rank} for variant in view.variants]
  initial = build_event(view.job, variants=variants)
  stream = sse_stream(subscription, initial=initial, keepalive_seconds=runtime.settings.progress_keepalive_seconds)
  headers = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
  return StreamingResponse(stream, media_type="text/event-stream", headers=headers)


@router.post("/{job_id}/callback", response_model=CallbackResponse)
async def provider_callback(job_id: str, request: Request, runtime: RuntimeDep) -> CallbackResponse:
  """Signed status callback from the render provider."""
  raw_body = await request.body()
  result = await runtime.callbacks.handle_provider_callback(job_id, raw_body, request.headers)
  return CallbackResponse(ok=result.ok, ignored=result.ignored, status=result.status)
