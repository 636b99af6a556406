"""SQLAlchemy unit of work binding every repository to one session."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.schema.enhancements import WebhookNonce
from app.storage.postgres_credits_repo import PostgresCreditsRepository
from app.storage.postgres_jobs_repo import PostgresJobsRepository
from app.storage.postgres_outbox_repo import PostgresOutboxRepository
from app.storage.repositories import NonceRepository

logger = logging.getLogger(__name__)


class PostgresNonceRepository(NonceRepository):
  def __init__(self, session: AsyncSession) -> None:
    self._session = session

  async def remember(self, nonce: str, *, job_id: str, now: datetime) -> bool:
    stmt = pg_insert(WebhookNonce).values(nonce=nonce, job_id=job_id, created_at=now).on_conflict_do_nothing(index_elements=[WebhookNonce.nonce]).returning(WebhookNonce.nonce)
    result = await self._session.execute(stmt)
    return result.scalar_one_or_none() is not None


class SqlAlchemyUnitOfWork:
  """Open a session on enter; commit on clean exit, roll back otherwise."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory
    self._session: AsyncSession | None = None

  async def __aenter__(self) -> SqlAlchemyUnitOfWork:
    session = self._session_factory()
    self._session = session
    self.credits = PostgresCreditsRepository(session)
    self.jobs = PostgresJobsRepository(session)
    self.outbox = PostgresOutboxRepository(session)
    self.nonces = PostgresNonceRepository(session)
    return self

  async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
    session = self._session
    if session is None:
      return
    try:
      if exc_type is None:
        await session.commit()
      else:
        logger.debug("Rolling back unit of work after %s", getattr(exc_type, "__name__", exc_type))
        await session.rollback()
    finally:
      await session.close()
      self._session = None
