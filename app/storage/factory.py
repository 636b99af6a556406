from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import Settings, get_database_settings
from app.core.database import create_engine, create_session_factory
from app.storage.memory_store import InMemoryStore
from app.storage.postgres_uow import SqlAlchemyUnitOfWork
from app.storage.repositories import UnitOfWorkFactory


@dataclass
class StorageBackend:
  """The configured unit-of-work factory and whatever it must dispose of."""

  uow_factory: UnitOfWorkFactory
  engine: AsyncEngine | None = None
  memory_store: InMemoryStore | None = None

  async def dispose(self) -> None:
    if self.engine is not None:
      await self.engine.dispose()


def build_storage(settings: Settings) -> StorageBackend:
  """Select the storage backend once from settings."""
  if settings.store_backend == "memory":
    store = InMemoryStore()
    return StorageBackend(uow_factory=store.unit_of_work, memory_store=store)

  engine = create_engine(get_database_settings())
  session_factory = create_session_factory(engine)
  return StorageBackend(uow_factory=lambda: SqlAlchemyUnitOfWork(session_factory), engine=engine)
