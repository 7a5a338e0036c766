import asyncio

import pytest
from sqlalchemy import select

from rewards_engine.models import Account, SerialCounter
from rewards_engine.services.engine import RewardEngine


@pytest.mark.asyncio
async def test_serial_assigned_when_threshold_reached(reward_engine) -> None:
    account = await reward_engine.register_account("customer")

    below = await reward_engine.record(account.id, 1000, "earn", None, "first")
    assert below.summary.serial_assignments == []

    crossed = await reward_engine.record(account.id, 500, "earn", None, "second")
    assert [a.global_serial_number for a in crossed.summary.serial_assignments] == [1]

    again = await reward_engine.record(account.id, 5000, "earn", None, "third")
    assert again.summary.serial_assignments == []

    stored = await reward_engine.get_account(account.id)
    assert stored.global_serial_number == 1
    assert stored.serial_assigned_at is not None


@pytest.mark.asyncio
async def test_reward_kinds_and_merchants_never_get_serials(reward_engine) -> None:
    customer = await reward_engine.register_account("customer")
    merchant = await reward_engine.register_account("merchant")

    await reward_engine.record(customer.id, 2000, "reward", None, "grant")
    await reward_engine.record(merchant.id, 2000, "earn", None, "sale")

    assert (await reward_engine.get_account(customer.id)).global_serial_number is None
    assert (await reward_engine.get_account(merchant.id)).global_serial_number is None

    await reward_engine.record(customer.id, 10, "transfer_in", None, "qr")
    assert (await reward_engine.get_account(customer.id)).global_serial_number == 1


@pytest.mark.asyncio
async def test_local_serials_are_counted_per_region(reward_engine) -> None:
    first_us = await reward_engine.register_account("customer", region="us")
    first_de = await reward_engine.register_account("customer", region="DE")
    second_us = await reward_engine.register_account("customer", region=" us ")
    no_region = await reward_engine.register_account("customer")

    for index, account in enumerate([first_us, first_de, second_us, no_region]):
        await reward_engine.record(account.id, 1500, "earn", None, f"earn-{index}")

    accounts = [await reward_engine.get_account(a.id) for a in (first_us, first_de, second_us, no_region)]
    assert [a.global_serial_number for a in accounts] == [1, 2, 3, 4]
    assert [a.local_serial_number for a in accounts] == [1, 1, 2, None]
    assert accounts[2].region == "US"

    stats = await reward_engine.serial_stats()
    assert stats.total_assigned == 4
    assert stats.latest_global_number == 4
    assert stats.local_counters == {"US": 2, "DE": 1}


@pytest.mark.asyncio
async def test_concurrent_assignment_is_gapless(file_session_factory, rules) -> None:
    engine = RewardEngine(
        file_session_factory,
        rules=rules,
        retry_attempts=200,
        retry_backoff_seconds=0.005,
        retry_max_backoff_seconds=0.05,
    )
    accounts = [await engine.register_account("customer") for _ in range(10)]

    results = await asyncio.gather(
        *(engine.record(account.id, 1500, "earn", None, f"earn-{index}") for index, account in enumerate(accounts))
    )
    assert all(not result.replayed for result in results)

    async with file_session_factory() as session:
        serials = (await session.execute(select(Account.global_serial_number))).scalars().all()
        counter = await session.get(SerialCounter, "global")

    assert sorted(serials) == list(range(1, 11))
    assert counter.value == 10

    stats = await engine.serial_stats()
    assert stats.step_up_reward_count == 2
