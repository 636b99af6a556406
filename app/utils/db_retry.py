"""Transaction-level retries for transient Postgres failures."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes that mean "run the whole transaction again".
_RETRYABLE_SQLSTATES = {
  "40001": ("serialization_conflict", "Serialization failure"),
  "40P01": ("deadlock", "Deadlock detected"),
}

# Conditions that retrying will not fix.
_PERMANENT_SQLSTATES = {
  "55P03": ("lock_timeout", "Lock not available"),
  "57014": ("query_timeout", "Statement canceled by timeout"),
}

_PERMANENT_CLASSES = {
  "23": ("integrity_error", "Integrity constraint violation"),
  "42": ("schema_error", "Undefined object or SQL syntax error"),
  "28": ("permission_error", "Authentication or permission error"),
}

_CONNECTIVITY_MARKERS = ("connection", "timeout", "reset", "network", "broken pipe", "closed")


@dataclass(frozen=True)
class DBFailureClassification:
  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Read the SQLSTATE from the driver exception wrapped by SQLAlchemy."""
  if not isinstance(exc, DBAPIError):
    return None
  orig = getattr(exc, "orig", None)
  # asyncpg exposes sqlstate; psycopg exposes pgcode.
  for attribute in ("sqlstate", "pgcode"):
    value = getattr(orig, attribute, None)
    if value:
      return str(value)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """Decide whether a failed transaction may be retried as a whole."""
  sqlstate = _extract_sqlstate(exc)

  if sqlstate in _RETRYABLE_SQLSTATES:
    category, reason = _RETRYABLE_SQLSTATES[sqlstate]
    return DBFailureClassification(retryable=True, reason=reason, sqlstate=sqlstate, category=category)

  if sqlstate in _PERMANENT_SQLSTATES:
    category, reason = _PERMANENT_SQLSTATES[sqlstate]
    return DBFailureClassification(retryable=False, reason=reason, sqlstate=sqlstate, category=category)

  if sqlstate and sqlstate[:2] in _PERMANENT_CLASSES:
    category, reason = _PERMANENT_CLASSES[sqlstate[:2]]
    return DBFailureClassification(retryable=False, reason=reason, sqlstate=sqlstate, category=category)

  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation", sqlstate=sqlstate, category="integrity_error")

  if isinstance(exc, OperationalError | OSError):
    message = str(exc).lower()
    if any(marker in message for marker in _CONNECTIVITY_MARKERS):
      return DBFailureClassification(retryable=True, reason="Transient connectivity error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error of unknown cause", sqlstate=sqlstate, category="operational_error_unknown")

  return DBFailureClassification(retryable=False, reason=f"Unclassified error: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000) -> T:
  """Run a whole unit of work, retrying it on transient database failures.

  ``func`` must open and commit its own transaction so a retry starts from
  a clean slate. Exceptions that do not come from the database layer
  propagate on the first attempt without being logged here.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      return await func()
    except (SQLAlchemyError, OSError) as exc:
      classification = classify_db_failure(exc)
      logger.warning(
        "DB operation failed: operation=%s attempt=%d/%d category=%s sqlstate=%s retryable=%s reason=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.sqlstate or "none",
        classification.retryable,
        classification.reason,
        exc_info=not classification.retryable,
      )
      if not classification.retryable or attempt >= max_attempts:
        raise

      # Exponential backoff with +/-25% jitter so competing writers spread out.
      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      backoff_ms += random.uniform(-0.25 * backoff_ms, 0.25 * backoff_ms)
      logger.info("Retrying DB operation: operation=%s next_attempt=%d backoff_ms=%.1f", operation_name, attempt + 1, backoff_ms)
      await asyncio.sleep(backoff_ms / 1000.0)
