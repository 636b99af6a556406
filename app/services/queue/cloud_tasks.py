from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from google.cloud import tasks_v2

from app.config import Settings
from app.core.security import TASK_SECRET_HEADER
from app.services.queue.interface import QueueAdapter

logger = logging.getLogger(__name__)

DRAIN_PATH = "/internal/tasks/drain-outbox"


class CloudTasksQueueAdapter(QueueAdapter):
  """Creates a Cloud Task per submission; the task calls back into the drain endpoint."""

  def __init__(self, settings: Settings, *, client: Any | None = None) -> None:
    self.settings = settings
    self._client = client

  async def start(self) -> None:
    if self._client is None:
      self._client = tasks_v2.CloudTasksClient()
    logger.info("Cloud Tasks queue adapter ready queue=%s", self.settings.cloud_tasks_queue_path)

  async def stop(self) -> None:
    self._client = None

  def _build_task(self, job_id: str) -> dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    if self.settings.task_secret:
      headers[TASK_SECRET_HEADER] = self.settings.task_secret
    http_request: dict[str, Any] = {
      "http_method": tasks_v2.HttpMethod.POST,
      "url": f"{self.settings.base_url.rstrip('/')}{DRAIN_PATH}",
      "headers": headers,
      "body": json.dumps({"job_id": job_id}).encode(),
    }
    # Cloud Run invoker auth needs an OIDC token minted for the configured identity.
    if self.settings.cloud_tasks_service_account:
      http_request["oidc_token"] = {"service_account_email": self.settings.cloud_tasks_service_account}
    return {"http_request": http_request}

  async def notify(self, job_id: str) -> None:
    if self._client is None:
      await self.start()
    parent = self.settings.cloud_tasks_queue_path
    task = self._build_task(job_id)
    try:
      # The client is synchronous; keep the event loop free while it calls out.
      response = await asyncio.to_thread(self._client.create_task, request={"parent": parent, "task": task})
      logger.info("Enqueued task %s for job %s", response.name, job_id)
    except Exception:  # noqa: BLE001
      # The outbox row is already committed; the next drain picks it up.
      logger.error("Failed to enqueue drain task for job %s", job_id, exc_info=True)
