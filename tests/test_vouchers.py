from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest
from sqlalchemy import update

from rewards_engine.models import LedgerEntry, LedgerEntryKind
from rewards_engine.services.ledger import derive_idempotency_key
from rewards_engine.services.rewards import split_pool


def test_split_pool_floors_and_assigns_residual_to_largest_weight() -> None:
    small, large = UUID(int=1), UUID(int=2)

    shares = split_pool(100, {small: 1, large: 2})

    assert shares == {small: 33, large: 67}
    assert sum(shares.values()) == 100


def test_split_pool_breaks_ties_by_smallest_id() -> None:
    first, second = UUID(int=1), UUID(int=2)

    shares = split_pool(5, {second: 10, first: 10})

    assert shares == {first: 3, second: 2}


def test_split_pool_without_participants_is_empty() -> None:
    assert split_pool(6_000, {}) == {}
    assert split_pool(6_000, {UUID(int=1): 0}) == {}


@pytest.mark.asyncio
async def test_step_up_reward_distributes_voucher_pool(reward_engine) -> None:
    busy = await reward_engine.register_account("merchant")
    quiet = await reward_engine.register_account("merchant")
    supplier = await reward_engine.register_account("merchant")
    idle = await reward_engine.register_account("merchant")

    await reward_engine.record(busy.id, 10_000, "earn", None, "busy-sale")
    await reward_engine.record(quiet.id, 10_000, "earn", None, "quiet-sale")
    await reward_engine.record(idle.id, 10_000, "earn", None, "idle-sale")
    await reward_engine.transfer(busy.id, supplier.id, 2_000, None, "busy-payout")
    await reward_engine.transfer(quiet.id, supplier.id, 1_000, None, "quiet-payout")

    for index in range(5):
        account = await reward_engine.register_account("customer")
        await reward_engine.record(account.id, 1_500, "earn", None, f"customer-{index}")

    busy_vouchers = await reward_engine.get_shopping_vouchers(busy.id)
    quiet_vouchers = await reward_engine.get_shopping_vouchers(quiet.id)

    assert [v.voucher_amount for v in busy_vouchers] == [4_000]
    assert [v.voucher_amount for v in quiet_vouchers] == [2_000]
    assert await reward_engine.get_shopping_vouchers(supplier.id) == []
    assert await reward_engine.get_shopping_vouchers(idle.id) == []
    assert busy_vouchers[0].triggering_step_up_reward_id == quiet_vouchers[0].triggering_step_up_reward_id
    assert await reward_engine.get_balance(busy.id) == 10_000 - 2_000 + 4_000

    busy_credit = (await reward_engine.get_ledger(busy.id)).entries[0]
    assert busy_credit.kind == LedgerEntryKind.VOUCHER
    assert busy_credit.idempotency_key == derive_idempotency_key("voucher", 1, 5, busy.id)
    assert busy_credit.source_ref == "voucher:1x5"

    stats = await reward_engine.voucher_stats()
    assert stats.voucher_count == 2
    assert stats.points_distributed == 6_000
    assert stats.merchants_rewarded == 2
    assert stats.pools_released == 1


@pytest.mark.asyncio
async def test_inactive_merchants_do_not_participate(reward_engine) -> None:
    merchant = await reward_engine.register_account("merchant")
    supplier = await reward_engine.register_account("merchant")
    await reward_engine.record(merchant.id, 5_000, "earn", None, "sale")
    await reward_engine.transfer(merchant.id, supplier.id, 1_000, None, "payout")
    await reward_engine.set_account_active(merchant.id, False)

    for index in range(5):
        account = await reward_engine.register_account("customer")
        await reward_engine.record(account.id, 1_500, "earn", None, f"customer-{index}")

    assert await reward_engine.get_shopping_vouchers(merchant.id) == []
    assert await reward_engine.get_balance(merchant.id) == 4_000


@pytest.mark.asyncio
async def test_transfers_older_than_lookback_do_not_count(reward_engine, session_factory, rules) -> None:
    stale = await reward_engine.register_account("merchant")
    fresh = await reward_engine.register_account("merchant")
    supplier = await reward_engine.register_account("merchant")
    await reward_engine.record(stale.id, 5_000, "earn", None, "stale-sale")
    await reward_engine.record(fresh.id, 5_000, "earn", None, "fresh-sale")
    await reward_engine.transfer(stale.id, supplier.id, 3_000, None, "stale-payout")
    await reward_engine.transfer(fresh.id, supplier.id, 500, None, "fresh-payout")

    backdated = datetime.now(timezone.utc) - timedelta(days=rules.vouchers.lookback_days * 2)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(LedgerEntry)
                .where(LedgerEntry.account_id == stale.id, LedgerEntry.kind == LedgerEntryKind.TRANSFER_OUT)
                .values(created_at=backdated)
            )

    for index in range(5):
        account = await reward_engine.register_account("customer")
        await reward_engine.record(account.id, 1_500, "earn", None, f"customer-{index}")

    assert await reward_engine.get_shopping_vouchers(stale.id) == []
    assert [v.voucher_amount for v in await reward_engine.get_shopping_vouchers(fresh.id)] == [6_000]
