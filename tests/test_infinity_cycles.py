import pytest

from rewards_engine.core.errors import CascadeDepthExceeded, ConfigurationMissing
from rewards_engine.rules import InfinityRules
from rewards_engine.services.engine import RewardEngine
from rewards_engine.services.rewards import InfinityCycleTracker


def test_thresholds_and_rewards_extend_geometrically(rules) -> None:
    infinity = rules.infinity

    assert [infinity.threshold_for(n) for n in range(4)] == [30_000, 150_000, 750_000, 3_750_000]
    assert [infinity.reward_for(n) for n in range(5)] == [5_000, 30_000, 200_000, 1_000_000, 5_000_000]

    without_growth = InfinityRules(base_threshold=10, threshold_ratio=2, rewards=(1,), reward_growth_factor=None)
    with pytest.raises(ConfigurationMissing):
        without_growth.reward_for(1)


def test_pending_cycles_respects_cap() -> None:
    tracker = InfinityCycleTracker(None, InfinityRules(base_threshold=100, threshold_ratio=2, rewards=(1,), max_cycles=2))

    assert tracker.pending_cycles(1_000, 0) == [0, 1]
    assert tracker.pending_cycles(1_000, 2) == []
    assert tracker.pending_cycles(99, 0) == []


@pytest.mark.asyncio
async def test_grant_of_40000_completes_exactly_cycle_zero(reward_engine) -> None:
    account = await reward_engine.register_account("customer")

    result = await reward_engine.record(account.id, 40_000, "earn", None, "grant")

    cycles = await reward_engine.get_infinity_cycles(account.id)
    assert [(c.cycle_number, c.milestone_points, c.reward_points) for c in cycles] == [(0, 30_000, 5_000)]
    assert result.balance == 45_000
    stored = await reward_engine.get_account(account.id)
    assert stored.infinity_cycles_completed == 1
    assert stored.lifetime_earned == 45_000

    await reward_engine.record(account.id, 104_999, "earn", None, "almost")
    assert len(await reward_engine.get_infinity_cycles(account.id)) == 1

    await reward_engine.record(account.id, 1, "earn", None, "crossing")
    cycles = await reward_engine.get_infinity_cycles(account.id)
    assert [c.cycle_number for c in cycles] == [0, 1]
    assert cycles[1].reward_points == 30_000


@pytest.mark.asyncio
async def test_one_event_can_complete_several_cycles_in_order(reward_engine) -> None:
    account = await reward_engine.register_account("customer")

    await reward_engine.record(account.id, 800_000, "earn", None, "big")

    cycles = await reward_engine.get_infinity_cycles(account.id)
    assert [c.cycle_number for c in cycles] == [0, 1, 2]
    assert await reward_engine.get_balance(account.id) == 800_000 + 5_000 + 30_000 + 200_000

    await reward_engine.record(account.id, 100, "earn", None, "small")
    assert [c.cycle_number for c in await reward_engine.get_infinity_cycles(account.id)] == [0, 1, 2]


@pytest.mark.asyncio
async def test_spending_never_undoes_cycles_and_merchants_are_skipped(reward_engine) -> None:
    customer = await reward_engine.register_account("customer")
    merchant = await reward_engine.register_account("merchant")

    await reward_engine.record(customer.id, 30_000, "earn", None, "earn")
    await reward_engine.record(customer.id, 30_000, "spend", None, "spend")
    await reward_engine.record(merchant.id, 100_000, "earn", None, "sale")

    assert [c.cycle_number for c in await reward_engine.get_infinity_cycles(customer.id)] == [0]
    assert await reward_engine.get_infinity_cycles(merchant.id) == []
    assert await reward_engine.get_balance(customer.id) == 5_000


@pytest.mark.asyncio
async def test_runaway_cascade_is_bounded_and_rolled_back(session_factory, rules) -> None:
    from dataclasses import replace

    runaway = replace(
        rules,
        infinity=InfinityRules(base_threshold=100, threshold_ratio=2, rewards=(1_000,), reward_growth_factor=2),
    )
    engine = RewardEngine(session_factory, rules=runaway, max_cascade_depth=1, retry_backoff_seconds=0.0)
    account = await engine.register_account("customer")

    with pytest.raises(CascadeDepthExceeded):
        await engine.record(account.id, 100, "earn", None, "trigger")

    assert await engine.get_balance(account.id) == 0
    assert await engine.get_infinity_cycles(account.id) == []
    assert (await engine.get_ledger(account.id)).entries == []


@pytest.mark.asyncio
async def test_infinity_statistics_aggregate_all_customers(reward_engine) -> None:
    assert (await reward_engine.infinity_stats()).cycles_completed == 0

    big = await reward_engine.register_account("customer")
    small = await reward_engine.register_account("customer")
    await reward_engine.record(big.id, 800_000, "earn", None, "big")
    await reward_engine.record(small.id, 40_000, "earn", None, "small")

    stats = await reward_engine.infinity_stats()
    assert stats.customers_rewarded == 2
    assert stats.cycles_completed == 4
    assert stats.points_awarded == 5_000 + 30_000 + 200_000 + 5_000
    assert stats.cycles_by_number == {0: 2, 1: 1, 2: 1}
