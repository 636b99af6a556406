"""Test configuration: environment, in-memory storage, and the ASGI client."""

from __future__ import annotations

import os
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

# Settings are read at import time by app.main, so the environment comes first.
os.environ["POOLVISUAL_ALLOWED_ORIGINS"] = "http://localhost:3000"
os.environ["POOLVISUAL_STORE_BACKEND"] = "memory"
os.environ["POOLVISUAL_QUEUE_BACKEND"] = "inprocess"
os.environ["POOLVISUAL_RENDER_PROVIDER"] = "mock"
os.environ["POOLVISUAL_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["POOLVISUAL_TASK_SECRET"] = "test-task-secret"
os.environ["POOLVISUAL_BASE_URL"] = "https://api.poolvisual.test"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app.api.deps import get_runtime  # noqa: E402
from app.config import Settings, get_settings  # noqa: E402
from app.jobs.lifecycle import JobLifecycle  # noqa: E402
from app.jobs.outbox import OutboxDispatcher, OutboxPolicy  # noqa: E402
from app.jobs.progress import ProgressBroadcaster  # noqa: E402
from app.main import app  # noqa: E402
from app.services.callbacks import CallbackHandler  # noqa: E402
from app.services.credits import CreditLedger  # noqa: E402
from app.services.enhancements import EnhancementService  # noqa: E402
from app.services.runtime import EnhancementRuntime  # noqa: E402
from app.storage.factory import StorageBackend  # noqa: E402
from app.storage.memory_store import InMemoryStore  # noqa: E402


class FakeClock:
  """Controllable clock passed wherever services accept ``clock=``."""

  def __init__(self, start: datetime) -> None:
    self.now = start

  def __call__(self) -> datetime:
    return self.now

  def advance(self, **kwargs: float) -> None:
    self.now = self.now + timedelta(**kwargs)


class RecordingQueue:
  """Queue adapter that only remembers which jobs it was told about."""

  def __init__(self) -> None:
    self.notified: list[str] = []
    self.started = False

  async def start(self) -> None:
    self.started = True

  async def stop(self) -> None:
    self.started = False

  async def notify(self, job_id: str) -> None:
    self.notified.append(job_id)


class FakeProvider:
  """Render provider that records payloads and fails on demand."""

  name = "fake"

  def __init__(self) -> None:
    self.payloads: list[dict[str, Any]] = []
    self.error: Exception | None = None
    self.closed = False

  async def dispatch(self, payload: dict[str, Any]) -> None:
    self.payloads.append(payload)
    if self.error is not None:
      raise self.error

  async def aclose(self) -> None:
    self.closed = True


# Force anyio to use asyncio
@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def settings() -> Settings:
  get_settings.cache_clear()
  return get_settings()


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def store() -> InMemoryStore:
  return InMemoryStore()


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
  return ProgressBroadcaster(max_queue_size=10)


@pytest.fixture
def ledger(store, clock) -> CreditLedger:
  return CreditLedger(store.unit_of_work, clock=clock)


@pytest.fixture
def lifecycle(store, ledger, broadcaster, clock) -> JobLifecycle:
  return JobLifecycle(store.unit_of_work, ledger, broadcaster, clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
  return FakeProvider()


@pytest.fixture
def queue() -> RecordingQueue:
  return RecordingQueue()


@pytest.fixture
def policy() -> OutboxPolicy:
  return OutboxPolicy(max_attempts=3, backoff_base_ms=5000, backoff_max_ms=30000, jitter_ms=1000, lease_seconds=120, batch_size=10)


@pytest.fixture
def dispatcher(store, provider, lifecycle, policy, clock) -> OutboxDispatcher:
  return OutboxDispatcher(store.unit_of_work, provider, lifecycle, policy=policy, clock=clock, rng=lambda: 0.0)


@pytest.fixture
def callbacks(store, lifecycle, settings, clock) -> CallbackHandler:
  return CallbackHandler(store.unit_of_work, lifecycle, secret=settings.webhook_secret, clock=clock)


@pytest.fixture
def service(store, ledger, lifecycle, queue, clock) -> EnhancementService:
  return EnhancementService(store.unit_of_work, ledger, lifecycle, queue, base_url="https://api.poolvisual.test", provider_name="webhook", model="sdxl", clock=clock)


@pytest.fixture
async def runtime(settings, store, queue):
  built = EnhancementRuntime.build(settings, storage=StorageBackend(uow_factory=store.unit_of_work, memory_store=store), queue=queue)
  yield built
  # The mock provider may still hold simulated renders started by a drain.
  await built.provider.aclose()
  built.broadcaster.close_all()


@pytest.fixture
async def async_client(runtime):
  app.dependency_overrides[get_runtime] = lambda: runtime
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()
