"""In-process stand-in for the render workflow, used for local development."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

from app.services.providers.interface import CallbackSink, RenderProvider
from app.webhooks.signing import NONCE_HEADER, signature_headers

logger = logging.getLogger(__name__)

MOCK_RENDERING_PROGRESS = 40


class MockRenderProvider(RenderProvider):
  """Acknowledges dispatches, then replays signed callbacks through the callback handler."""

  name = "mock"

  def __init__(self, *, secret: str, callback_sink: CallbackSink, delay_seconds: float = 1.5) -> None:
    self._secret = secret
    self._callback_sink = callback_sink
    self._delay = delay_seconds
    self._tasks: set[asyncio.Task[None]] = set()

  async def dispatch(self, payload: dict[str, Any]) -> None:
    job_id = str(payload["jobId"])
    task = asyncio.create_task(self._simulate(job_id, payload), name=f"mock-render-{job_id}")
    # Keep a strong reference until the simulation finishes.
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
    logger.info("Mock provider accepted job_id=%s", job_id)

  async def _simulate(self, job_id: str, payload: dict[str, Any]) -> None:
    image_url = str(payload.get("imageUrl") or "")
    variant_count = int((payload.get("options") or {}).get("variants") or 1)
    try:
      await asyncio.sleep(self._delay)
      await self._deliver(job_id, {"jobId": job_id, "status": "rendering", "progress": MOCK_RENDERING_PROGRESS})
      await asyncio.sleep(self._delay)
      variants = [{"url": f"{image_url}#mock-variant-{rank + 1}", "rank": rank} for rank in range(max(variant_count, 1))]
      await self._deliver(job_id, {"jobId": job_id, "status": "completed", "variants": variants, "costMicros": 0})
    except asyncio.CancelledError:
      logger.info("Mock render canceled job_id=%s", job_id)
      raise
    except Exception:  # noqa: BLE001
      logger.error("Mock render simulation failed job_id=%s", job_id, exc_info=True)

  async def _deliver(self, job_id: str, body: dict[str, Any]) -> None:
    raw = json.dumps(body, separators=(",", ":")).encode("utf-8")
    headers = {key.lower(): value for key, value in signature_headers(raw, self._secret).items()}
    headers[NONCE_HEADER.lower()] = uuid.uuid4().hex
    await self._callback_sink(job_id, raw, headers)

  async def aclose(self) -> None:
    tasks = list(self._tasks)
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)
