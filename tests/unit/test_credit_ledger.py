"""Reservation ledger: balance changes always mirrored by ledger entries."""

from __future__ import annotations

import asyncio
import random

import pytest

from app.services.credits import CreditLedger
from app.storage.memory_store import InMemoryStore


def _assert_conserved(store: InMemoryStore, account_id: str) -> None:
  entries = store.entries_for(account_id)
  running = 0
  for entry in entries:
    running += entry.delta
    assert entry.balance_after == running
    assert entry.balance_after >= 0
  assert store.balance_of(account_id) == running


@pytest.mark.anyio
async def test_add_credits_creates_account(store: InMemoryStore, ledger: CreditLedger) -> None:
  balance = await ledger.add_credits("user-1", 50, "subscription", "March plan", tenant_id="tenant-1")
  assert balance == 50
  assert await ledger.get_balance("user-1") == 50
  (entry,) = store.entries_for("user-1")
  assert entry.source_type == "subscription"
  assert entry.delta == 50
  assert entry.description == "March plan"


@pytest.mark.anyio
async def test_get_balance_of_unknown_account_is_zero(ledger: CreditLedger) -> None:
  assert await ledger.get_balance("nobody") == 0


@pytest.mark.anyio
@pytest.mark.parametrize("source_type", ["reservation", "refund", "gift"])
async def test_add_credits_rejects_internal_source_types(ledger: CreditLedger, source_type: str) -> None:
  with pytest.raises(ValueError):
    await ledger.add_credits("user-1", 5, source_type)  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_add_credits_rejects_non_positive_amount(ledger: CreditLedger) -> None:
  with pytest.raises(ValueError):
    await ledger.add_credits("user-1", 0, "topup")


@pytest.mark.anyio
async def test_reserve_debits_and_records_entry(store: InMemoryStore, ledger: CreditLedger) -> None:
  await ledger.add_credits("user-1", 50, "topup")
  async with store.unit_of_work() as uow:
    reservation = await ledger.reserve("user-1", 10, uow=uow, job_id="job-1")
  assert reservation.reserved is True
  assert reservation.new_balance == 40
  assert store.balance_of("user-1") == 40
  entry = store.entries_for("user-1")[-1]
  assert (entry.delta, entry.source_type, entry.job_id) == (-10, "reservation", "job-1")


@pytest.mark.anyio
async def test_reserve_refuses_overdraft(store: InMemoryStore, ledger: CreditLedger) -> None:
  await ledger.add_credits("user-1", 5, "topup")
  async with store.unit_of_work() as uow:
    reservation = await ledger.reserve("user-1", 10, uow=uow)
  assert reservation.reserved is False
  assert reservation.new_balance == 5
  assert store.balance_of("user-1") == 5
  assert len(store.entries_for("user-1")) == 1


@pytest.mark.anyio
async def test_reserve_without_account(store: InMemoryStore, ledger: CreditLedger) -> None:
  async with store.unit_of_work() as uow:
    reservation = await ledger.reserve("ghost", 2, uow=uow)
  assert reservation.reserved is False
  assert reservation.new_balance == 0


@pytest.mark.anyio
async def test_reserve_rejects_non_positive_amount(store: InMemoryStore, ledger: CreditLedger) -> None:
  async with store.unit_of_work() as uow:
    with pytest.raises(ValueError):
      await ledger.reserve("user-1", 0, uow=uow)


@pytest.mark.anyio
async def test_refund_credits_back(store: InMemoryStore, ledger: CreditLedger) -> None:
  await ledger.add_credits("user-1", 50, "topup")
  async with store.unit_of_work() as uow:
    await ledger.reserve("user-1", 10, uow=uow, job_id="job-1")
    balance = await ledger.refund("user-1", 10, uow=uow, job_id="job-1", reason="failed")
  assert balance == 50
  assert [entry.source_type for entry in store.entries_for("user-1")] == ["topup", "reservation", "refund"]


@pytest.mark.anyio
async def test_zero_refund_writes_nothing(store: InMemoryStore, ledger: CreditLedger) -> None:
  await ledger.add_credits("user-1", 50, "topup")
  async with store.unit_of_work() as uow:
    assert await ledger.refund("user-1", 0, uow=uow, job_id="job-1") == 50
  assert len(store.entries_for("user-1")) == 1


@pytest.mark.anyio
async def test_failed_unit_of_work_rolls_back_reservation(store: InMemoryStore, ledger: CreditLedger) -> None:
  await ledger.add_credits("user-1", 50, "topup")
  with pytest.raises(RuntimeError):
    async with store.unit_of_work() as uow:
      await ledger.reserve("user-1", 10, uow=uow)
      raise RuntimeError("job insert failed")
  assert store.balance_of("user-1") == 50
  assert len(store.entries_for("user-1")) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("seed", [1, 7, 42])
async def test_balance_always_equals_sum_of_entries(store: InMemoryStore, ledger: CreditLedger, seed: int) -> None:
  rng = random.Random(seed)
  outstanding: list[int] = []
  await ledger.add_credits("user-1", 20, "subscription")

  for _ in range(200):
    action = rng.choice(["grant", "reserve", "reserve", "refund"])
    if action == "grant":
      await ledger.add_credits("user-1", rng.randint(1, 15), rng.choice(["topup", "adjustment", "subscription"]))
    elif action == "reserve":
      amount = rng.choice([2, 5, 6, 10])
      async with store.unit_of_work() as uow:
        reservation = await ledger.reserve("user-1", amount, uow=uow)
      if reservation.reserved:
        outstanding.append(amount)
    elif outstanding:
      amount = outstanding.pop(rng.randrange(len(outstanding)))
      async with store.unit_of_work() as uow:
        await ledger.refund("user-1", amount, uow=uow)
    _assert_conserved(store, "user-1")


@pytest.mark.anyio
async def test_concurrent_reservations_never_overdraw(store: InMemoryStore, ledger: CreditLedger) -> None:
  await ledger.add_credits("user-1", 25, "topup")

  async def _reserve(index: int) -> bool:
    async with store.unit_of_work() as uow:
      reservation = await ledger.reserve("user-1", 10, uow=uow, job_id=f"job-{index}")
    return reservation.reserved

  results = await asyncio.gather(*(_reserve(index) for index in range(5)))

  assert results.count(True) == 2
  assert store.balance_of("user-1") == 5
  _assert_conserved(store, "user-1")


@pytest.mark.anyio
async def test_history_lists_newest_first(store: InMemoryStore, ledger: CreditLedger) -> None:
  await ledger.add_credits("user-1", 50, "topup")
  async with store.unit_of_work() as uow:
    await ledger.reserve("user-1", 10, uow=uow, job_id="job-1")

  entries = await ledger.history("user-1", limit=10)

  assert [(entry.source_type, entry.delta, entry.balance_after) for entry in entries] == [("reservation", -10, 40), ("topup", 50, 50)]
  assert len(await ledger.history("user-1", limit=1)) == 1
  with pytest.raises(ValueError):
    await ledger.history("user-1", limit=0)
