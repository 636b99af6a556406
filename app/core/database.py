from __future__ import annotations

from app.config import DatabaseSettings, get_database_settings
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
  pass


def database_url(settings: DatabaseSettings | None = None) -> str | None:
  """Build the SQLAlchemy database URL, forcing the asyncpg driver."""
  settings = settings or get_database_settings()
  url = settings.pg_dsn
  if url and url.startswith("postgres://"):
    url = url.replace("postgres://", "postgresql+asyncpg://", 1)
  elif url and url.startswith("postgresql://"):
    url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

  return url


def create_engine(settings: DatabaseSettings | None = None) -> AsyncEngine:
  """Create an async engine with connect and statement timeouts applied."""
  settings = settings or get_database_settings()
  url = database_url(settings)
  if not url:
    raise RuntimeError("Database connection is not configured (POOLVISUAL_PG_DSN is missing).")

  # asyncpg takes the statement timeout as a server setting on every new connection.
  connect_args = {"timeout": settings.pg_connect_timeout, "server_settings": {"statement_timeout": str(settings.pg_statement_timeout_ms)}}
  return create_async_engine(url, echo=settings.debug, pool_pre_ping=True, connect_args=connect_args)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
