from datetime import timedelta

import pytest

from creditflow.ledger.types import CreditClass, EntryFilter
from creditflow.services.expiration import sweep_expired

pytestmark = pytest.mark.asyncio


async def test_sweep_deactivates_expired_rows_only(ledger, clock, stores):
    await ledger.allocate("u1", CreditClass.SUBSCRIPTION, 100, "pay_1", expires_at=clock() + timedelta(days=1))
    await ledger.allocate("u1", CreditClass.SUBSCRIPTION, 100, "pay_2", expires_at=clock() + timedelta(days=10))
    await ledger.allocate("u1", CreditClass.PERMANENT, 100, "topup_1")
    clock.advance(days=2)

    count = await sweep_expired(stores.ledger, clock())

    assert count == 1
    active = await stores.ledger.query("u1", EntryFilter(active_only=True))
    assert {e.source_transaction_id for e in active} == {"pay_2", "topup_1"}
    # rows are never deleted
    assert len(await stores.ledger.query("u1")) == 3


async def test_sweep_is_idempotent(ledger, clock, stores):
    await ledger.allocate("u1", CreditClass.SUBSCRIPTION, 100, "pay_1", expires_at=clock() + timedelta(hours=1))
    clock.advance(hours=2)
    assert await sweep_expired(stores.ledger, clock()) == 1
    assert await sweep_expired(stores.ledger, clock()) == 0


async def test_sweep_does_not_change_balance(ledger, clock, stores):
    await ledger.allocate("u1", CreditClass.SUBSCRIPTION, 100, "pay_1", expires_at=clock() + timedelta(days=1))
    await ledger.allocate("u1", CreditClass.PERMANENT, 40, "topup_1")
    await ledger.deduct("u1", 120, "task-1")
    clock.advance(days=2)
    before = await ledger.get_balance("u1")
    await sweep_expired(stores.ledger, clock())
    after = await ledger.get_balance("u1")
    assert before == after
    assert after.total == 20


async def test_sweep_retires_deductions_drawn_only_from_expired_grants(ledger, clock, stores):
    await ledger.allocate("u1", CreditClass.SUBSCRIPTION, 100, "pay_1", expires_at=clock() + timedelta(days=1))
    await ledger.deduct("u1", 50, "task-1")
    clock.advance(days=2)
    assert await sweep_expired(stores.ledger, clock()) == 2
    assert await stores.ledger.query("u1", EntryFilter(active_only=True)) == []


async def test_sweep_retires_consumed_permanent_grants_and_their_deductions(ledger, clock, stores):
    spent = await ledger.allocate("u1", CreditClass.PERMANENT, 100, "topup_1")
    await ledger.deduct("u1", 100, "task-1")
    live = await ledger.allocate("u1", CreditClass.PERMANENT, 50, "topup_2")
    await ledger.deduct("u1", 20, "task-2")
    before = await ledger.get_balance("u1")

    assert await sweep_expired(stores.ledger, clock()) == 2

    active = await stores.ledger.query("u1", EntryFilter(active_only=True))
    assert {e.id for e in active if e.is_grant} == {live.entry_id}
    assert [e.task_id for e in active if not e.is_grant] == ["task-2"]
    assert spent.entry_id not in {e.id for e in active}
    assert await ledger.get_balance("u1") == before
    assert before.total == 30


async def test_deduction_spanning_a_live_grant_is_kept(ledger, clock, stores):
    await ledger.allocate("u1", CreditClass.PERMANENT, 30, "topup_1")
    await ledger.allocate("u1", CreditClass.PERMANENT, 30, "topup_2")
    await ledger.deduct("u1", 40, "task-1")

    # topup_1 is used up and retired; the deduction still draws on topup_2
    assert await sweep_expired(stores.ledger, clock()) == 1
    assert (await ledger.get_balance("u1")).total == 20
    assert await sweep_expired(stores.ledger, clock()) == 0
