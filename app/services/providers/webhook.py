from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from app.jobs.errors import ProviderDispatchError
from app.services.providers.interface import RenderProvider
from app.webhooks.signing import signature_headers

logger = logging.getLogger(__name__)

USER_AGENT = "PoolVisual/1.0"


class WebhookRenderProvider(RenderProvider):
  """POSTs signed job payloads to the external render workflow."""

  name = "webhook"

  def __init__(self, *, url: str, secret: str, timeout_seconds: float, client: httpx.AsyncClient | None = None) -> None:
    self._url = url
    self._secret = secret
    self._timeout = timeout_seconds
    self._owns_client = client is None
    # Never trust environment proxy variables for provider traffic.
    self._client = client or httpx.AsyncClient(trust_env=False)

  async def dispatch(self, payload: dict[str, Any]) -> None:
    # Sign the exact bytes that go on the wire.
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT, **signature_headers(body, self._secret)}
    job_id = payload.get("jobId")

    try:
      response = await self._client.post(self._url, content=body, headers=headers, timeout=self._timeout)
    except httpx.TimeoutException as exc:
      logger.warning("Provider dispatch timed out job_id=%s after %.1fs", job_id, self._timeout)
      raise ProviderDispatchError(f"Provider dispatch timed out after {self._timeout:.0f}s") from exc
    except httpx.RequestError as exc:
      logger.warning("Provider dispatch failed job_id=%s error=%s", job_id, exc)
      raise ProviderDispatchError(f"Provider unreachable: {type(exc).__name__}") from exc

    if response.status_code >= 300:
      logger.warning("Provider rejected dispatch job_id=%s status=%s body=%s", job_id, response.status_code, response.text[:500])
      raise ProviderDispatchError(f"Provider returned HTTP {response.status_code}", status_code=response.status_code)

    logger.info("Dispatched job_id=%s to provider status=%s", job_id, response.status_code)

  async def aclose(self) -> None:
    if self._owns_client:
      await self._client.aclose()
