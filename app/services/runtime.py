"""Explicitly wired collaborators for the enhancement pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from app.config import Settings
from app.jobs.lifecycle import JobLifecycle
from app.jobs.outbox import OutboxDispatcher, OutboxPolicy
from app.jobs.progress import ProgressBroadcaster
from app.services.callbacks import CallbackHandler
from app.services.credits import CreditLedger
from app.services.enhancements import EnhancementService
from app.services.providers.interface import RenderProvider
from app.services.providers.registry import build_provider
from app.services.queue.factory import build_queue_adapter
from app.services.queue.interface import QueueAdapter
from app.storage.factory import StorageBackend, build_storage

logger = logging.getLogger(__name__)


@dataclass
class EnhancementRuntime:
  """Every long-lived service object, built once and owned by the app lifespan."""

  settings: Settings
  storage: StorageBackend
  broadcaster: ProgressBroadcaster
  ledger: CreditLedger
  lifecycle: JobLifecycle
  callbacks: CallbackHandler
  provider: RenderProvider
  dispatcher: OutboxDispatcher
  queue: QueueAdapter
  enhancements: EnhancementService
  http_client: httpx.AsyncClient | None = None
  started: bool = False

  @classmethod
  def build(cls, settings: Settings, *, storage: StorageBackend | None = None, http_client: httpx.AsyncClient | None = None, queue: QueueAdapter | None = None) -> EnhancementRuntime:
    """Wire the pipeline from settings; overrides exist for tests."""
    storage = storage or build_storage(settings)
    uow_factory = storage.uow_factory
    broadcaster = ProgressBroadcaster(max_queue_size=settings.progress_queue_size)
    ledger = CreditLedger(uow_factory)
    lifecycle = JobLifecycle(uow_factory, ledger, broadcaster)
    callbacks = CallbackHandler(uow_factory, lifecycle, secret=settings.webhook_secret)
    # Provider resolution happens once; an unknown name fails startup.
    provider = build_provider(settings.render_provider, settings=settings, callback_sink=callbacks.handle_provider_callback, http_client=http_client)
    dispatcher = OutboxDispatcher(uow_factory, provider, lifecycle, policy=OutboxPolicy.from_settings(settings))
    queue = queue or build_queue_adapter(settings, dispatcher)
    enhancements = EnhancementService(uow_factory, ledger, lifecycle, queue, base_url=settings.base_url, provider_name=provider.name, model=settings.render_model)
    return cls(
      settings=settings,
      storage=storage,
      broadcaster=broadcaster,
      ledger=ledger,
      lifecycle=lifecycle,
      callbacks=callbacks,
      provider=provider,
      dispatcher=dispatcher,
      queue=queue,
      enhancements=enhancements,
      http_client=http_client,
    )

  async def start(self) -> None:
    if self.started:
      return
    await self.queue.start()
    self.started = True
    logger.info("Enhancement runtime started store=%s queue=%s provider=%s", self.settings.store_backend, self.settings.queue_backend, self.provider.name)

  async def stop(self) -> None:
    if not self.started:
      return
    self.started = False
    await self.queue.stop()
    self.broadcaster.close_all()
    await self.provider.aclose()
    if self.http_client is not None:
      await self.http_client.aclose()
    await self.storage.dispose()
    logger.info("Enhancement runtime stopped")
