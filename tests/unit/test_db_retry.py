from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from app.utils.db_retry import classify_db_failure, execute_with_retry


class _DriverError(Exception):
  def __init__(self, message: str, sqlstate: str | None = None) -> None:
    super().__init__(message)
    self.sqlstate = sqlstate


def _dbapi_error(sqlstate: str) -> DBAPIError:
  return DBAPIError("UPDATE credit_accounts SET credits_balance = 1", {}, _DriverError("driver failure", sqlstate))


@pytest.mark.parametrize(("sqlstate", "retryable", "category"), [("40001", True, "serialization_conflict"), ("40P01", True, "deadlock"), ("57014", False, "query_timeout"), ("23505", False, "integrity_error"), ("42P01", False, "schema_error")])
def test_classify_by_sqlstate(sqlstate: str, retryable: bool, category: str) -> None:
  classification = classify_db_failure(_dbapi_error(sqlstate))
  assert classification.retryable is retryable
  assert classification.category == category
  assert classification.sqlstate == sqlstate


def test_connection_drop_is_retryable() -> None:
  exc = OperationalError("SELECT 1", {}, _DriverError("connection reset by peer"))
  assert classify_db_failure(exc).retryable is True


def test_integrity_error_without_sqlstate_is_permanent() -> None:
  exc = IntegrityError("INSERT", {}, _DriverError("duplicate key"))
  assert classify_db_failure(exc).category == "integrity_error"


def test_non_database_errors_are_unclassified() -> None:
  assert classify_db_failure(ValueError("nope")).retryable is False


@pytest.mark.anyio
async def test_retries_deadlock_then_succeeds() -> None:
  func = AsyncMock(side_effect=[_dbapi_error("40P01"), "ok"])
  with patch("app.utils.db_retry.asyncio.sleep", new=AsyncMock()) as sleep:
    assert await execute_with_retry(operation_name="test", func=func) == "ok"
  assert func.await_count == 2
  sleep.assert_awaited_once()


@pytest.mark.anyio
async def test_gives_up_after_max_attempts() -> None:
  func = AsyncMock(side_effect=_dbapi_error("40001"))
  with patch("app.utils.db_retry.asyncio.sleep", new=AsyncMock()):
    with pytest.raises(DBAPIError):
      await execute_with_retry(operation_name="test", func=func, max_attempts=3)
  assert func.await_count == 3


@pytest.mark.anyio
async def test_permanent_failure_is_not_retried() -> None:
  func = AsyncMock(side_effect=_dbapi_error("23505"))
  with pytest.raises(DBAPIError):
    await execute_with_retry(operation_name="test", func=func)
  assert func.await_count == 1


@pytest.mark.anyio
async def test_domain_errors_pass_straight_through() -> None:
  func = AsyncMock(side_effect=KeyError("job"))
  with pytest.raises(KeyError):
    await execute_with_retry(operation_name="test", func=func)
  assert func.await_count == 1
