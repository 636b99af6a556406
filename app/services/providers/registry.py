from __future__ import annotations

from enum import Enum

import httpx

from app.config import Settings
from app.jobs.errors import UnknownProviderError
from app.services.providers.interface import CallbackSink, RenderProvider
from app.services.providers.mock import MockRenderProvider
from app.services.providers.webhook import WebhookRenderProvider


class ProviderKind(str, Enum):
  """Closed set of render providers the service can route to."""

  WEBHOOK = "webhook"
  MOCK = "mock"


def resolve_provider_kind(name: str) -> ProviderKind:
  """Map a configured provider name onto the registry."""
  normalized = (name or "").strip().lower()
  try:
    return ProviderKind(normalized)
  except ValueError as exc:
    raise UnknownProviderError(name, known=[kind.value for kind in ProviderKind]) from exc


def build_provider(name: str, *, settings: Settings, callback_sink: CallbackSink, http_client: httpx.AsyncClient | None = None) -> RenderProvider:
  """Factory to get the configured render provider."""
  kind = resolve_provider_kind(name)
  if kind is ProviderKind.MOCK:
    return MockRenderProvider(secret=settings.webhook_secret, callback_sink=callback_sink, delay_seconds=settings.mock_render_delay_seconds)

  if not settings.provider_webhook_url:
    raise ValueError("POOLVISUAL_PROVIDER_WEBHOOK_URL must be set for the webhook provider.")
  return WebhookRenderProvider(url=settings.provider_webhook_url, secret=settings.webhook_secret, timeout_seconds=settings.dispatch_timeout_seconds, client=http_client)
